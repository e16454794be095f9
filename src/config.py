"""
DM Concierge - Centralized configuration.

Loads all settings from .env and validates required keys.
Missing credentials stop the process at start, never mid-conversation.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator, model_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

LLM_PROVIDERS = ("gemini", "anthropic", "openai", "cohere")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Instagram Messaging (Graph API)
    PAGE_ACCESS_TOKEN: str
    GRAPH_API_VERSION: str = "v21.0"
    APP_SECRET: str = ""         # empty → webhook signature check disabled
    VERIFY_TOKEN: str = ""

    # LLM: provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str
    LLM_TIMEOUT_SECONDS: float = 8.0

    # Local date used for "upcoming" event cutoffs
    TIMEZONE: str = "America/New_York"

    # SQLite
    DATABASE_PATH: str = "data/concierge.db"

    # Rate limiting (per user key)
    RATE_LIMIT_MAX_REQUESTS: int = 30
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Recommendations
    RECOMMENDATION_CAP: int = 3

    # Pacing between outbound DM units
    PACING_MIN_MS: int = 400
    PACING_MAX_MS: int = 900

    # Retention job
    CONVERSATION_RETENTION_DAYS: int = 30

    # Webhook server
    PORT: int = 3000

    @field_validator("LLM_PROVIDER")
    @classmethod
    def check_provider(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in LLM_PROVIDERS:
            raise ValueError(f"LLM_PROVIDER must be one of {', '.join(LLM_PROVIDERS)}, got '{v}'")
        return v

    @field_validator("TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown TIMEZONE '{v}'") from exc
        return v

    @field_validator("RECOMMENDATION_CAP")
    @classmethod
    def check_cap(cls, v: int) -> int:
        if not 3 <= v <= 4:
            raise ValueError("RECOMMENDATION_CAP must be 3 or 4")
        return v

    @field_validator("LLM_TIMEOUT_SECONDS")
    @classmethod
    def check_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("LLM_TIMEOUT_SECONDS must be positive")
        return v

    @model_validator(mode="after")
    def check_pacing(self) -> "Settings":
        if self.PACING_MIN_MS < 0 or self.PACING_MIN_MS > self.PACING_MAX_MS:
            raise ValueError("PACING_MIN_MS must be between 0 and PACING_MAX_MS")
        return self


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    page_token = os.getenv("PAGE_ACCESS_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not page_token or page_token.startswith("your-"):
        print("ERROR: PAGE_ACCESS_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    try:
        return Settings(
            PAGE_ACCESS_TOKEN=page_token,
            GRAPH_API_VERSION=os.getenv("GRAPH_API_VERSION", "v21.0"),
            APP_SECRET=os.getenv("APP_SECRET", ""),
            VERIFY_TOKEN=os.getenv("VERIFY_TOKEN", ""),
            LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
            LLM_MODEL=os.getenv("LLM_MODEL", ""),
            LLM_API_KEY=llm_api_key,
            LLM_TIMEOUT_SECONDS=os.getenv("LLM_TIMEOUT_SECONDS", "8"),
            TIMEZONE=os.getenv("TIMEZONE", "America/New_York"),
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/concierge.db"),
            RATE_LIMIT_MAX_REQUESTS=os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"),
            RATE_LIMIT_WINDOW_SECONDS=os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600"),
            RECOMMENDATION_CAP=os.getenv("RECOMMENDATION_CAP", "3"),
            PACING_MIN_MS=os.getenv("PACING_MIN_MS", "400"),
            PACING_MAX_MS=os.getenv("PACING_MAX_MS", "900"),
            CONVERSATION_RETENTION_DAYS=os.getenv("CONVERSATION_RETENTION_DAYS", "30"),
            PORT=os.getenv("PORT", "3000"),
        )
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
