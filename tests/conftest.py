"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB and the stores on top of it.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("PAGE_ACCESS_TOKEN", "fake-page-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("APP_SECRET", "")
os.environ.setdefault("VERIFY_TOKEN", "")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_concierge.db")


@pytest.fixture
def database(tmp_db_path):
    """Return an open Database backed by a temp file; closed after the test."""
    from src.data.db import Database
    db = Database(tmp_db_path).open()
    yield db
    db.close()


@pytest.fixture
def conversation_db(database):
    from src.data.db import ConversationDB
    return ConversationDB(database)


@pytest.fixture
def profile_db(database):
    from src.data.db import UserProfileDB
    return UserProfileDB(database)


@pytest.fixture
def rate_limit_db(database):
    from src.data.db import RateLimitDB
    return RateLimitDB(database)


@pytest.fixture
def item_db(database):
    from src.data.db import ItemDB
    return ItemDB(database)
