"""Tests for maintenance.py: retention cleanup and rate-limit reset."""

from datetime import datetime, timedelta, timezone

import pytest

import maintenance
from src.data.db import ConversationDB, Database, RateLimitDB


def _seed(db_path, ages_in_days):
    with Database(db_path) as db:
        conversations = ConversationDB(db)
        conn = db.connection()
        for age in ages_in_days:
            entry = conversations.add_entry(
                user_key="u1", raw_message=f"{age}d", parsed_intent={}, confidence_score=0.3,
                clarifying_question_sent=True, recommendations_returned=[], bot_response="?",
            )
            created = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=age)
            with conn:
                conn.execute(
                    "UPDATE conversations SET created_at = ? WHERE id = ?",
                    (created.isoformat(timespec="microseconds"), entry.id),
                )


class TestCleanup:
    def test_default_retention(self, tmp_db_path):
        _seed(tmp_db_path, [0, 10, 31, 90])
        assert maintenance.main(["--db", tmp_db_path, "cleanup"]) == 0
        with Database(tmp_db_path) as db:
            remaining = {e.raw_message for e in ConversationDB(db).recent("u1", limit=10)}
        assert remaining == {"0d", "10d"}

    def test_custom_days(self, tmp_db_path):
        _seed(tmp_db_path, [0, 10, 31])
        assert maintenance.main(["--db", tmp_db_path, "cleanup", "--days", "5"]) == 0
        with Database(tmp_db_path) as db:
            assert ConversationDB(db).count() == 1

    def test_invalid_days(self, tmp_db_path):
        with pytest.raises(SystemExit):
            maintenance.main(["--db", tmp_db_path, "cleanup", "--days", "0"])


class TestResetLimits:
    def test_clears_all_windows(self, tmp_db_path):
        with Database(tmp_db_path) as db:
            limits = RateLimitDB(db)
            limits.consume("a", 1.0, 30, 3600)
            limits.consume("b", 1.0, 30, 3600)
        assert maintenance.main(["--db", tmp_db_path, "reset-limits"]) == 0
        with Database(tmp_db_path) as db:
            assert RateLimitDB(db).get_record("a") is None
            assert RateLimitDB(db).get_record("b") is None


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            maintenance.main([])

    def test_failure_returns_nonzero(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        assert maintenance.main(["--db", str(blocker / "sub" / "c.db"), "reset-limits"]) == 1
