"""
DM Concierge - SQLite Storage.

One Database handle is opened at startup and injected into every store.
Stores:
  - ConversationDB: append-only turn log, newest-first reads, retention delete
  - UserProfileDB:  per-user preference aggregates
  - RateLimitDB:    per-user request windows (atomic upsert)
  - ItemDB:         places and events, normalized on the way in
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.data.models import (
    ConversationEntry,
    RateLimitRecord,
    RecommendationItem,
    UserProfile,
)
from src.data.normalize import normalize_event, normalize_place

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="microseconds")


def _regexp(pattern: str | None, value: str | None) -> bool:
    """SQLite REGEXP: case-insensitive containment search."""
    if pattern is None or value is None:
        return False
    return re.search(pattern, value, re.IGNORECASE) is not None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id                       INTEGER PRIMARY KEY AUTOINCREMENT,
    user_key                 TEXT    NOT NULL,
    raw_message              TEXT    NOT NULL,
    parsed_intent            TEXT    NOT NULL,
    confidence_score         REAL    NOT NULL,
    clarifying_question_sent INTEGER NOT NULL DEFAULT 0,
    recommendations_returned TEXT    NOT NULL DEFAULT '[]',
    bot_response             TEXT    NOT NULL DEFAULT '',
    created_at               TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conversations_user_created
    ON conversations (user_key, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_conversations_created
    ON conversations (created_at);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_key          TEXT    PRIMARY KEY,
    location_counts   TEXT    NOT NULL DEFAULT '{}',
    cuisine_counts    TEXT    NOT NULL DEFAULT '{}',
    category_counts   TEXT    NOT NULL DEFAULT '{}',
    budget_bias_score REAL,
    interaction_count INTEGER NOT NULL DEFAULT 0,
    last_interaction  TEXT    NOT NULL,
    created_at        TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_limits (
    user_key      TEXT    PRIMARY KEY,
    request_count INTEGER NOT NULL,
    window_start  REAL    NOT NULL,
    last_request  REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS places (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT    NOT NULL,
    location   TEXT    NOT NULL DEFAULT '',
    tags       TEXT    NOT NULL DEFAULT '[]',
    price_tier TEXT,
    score      REAL    NOT NULL DEFAULT 0,
    link       TEXT,
    vibe_tags  TEXT    NOT NULL DEFAULT '[]',
    doc        TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_places_score ON places (score DESC);

CREATE TABLE IF NOT EXISTS events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    NOT NULL,
    location    TEXT    NOT NULL DEFAULT '',
    tags        TEXT    NOT NULL DEFAULT '[]',
    price       TEXT,
    score       REAL    NOT NULL DEFAULT 0,
    starts_at   TEXT,
    active      INTEGER NOT NULL DEFAULT 1,
    link        TEXT,
    vibe_tags   TEXT    NOT NULL DEFAULT '[]',
    doc         TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_active_start ON events (active, starts_at);
"""


class Database:
    """Explicit lifecycle around a single SQLite connection.

    open() once at startup, connection() health-checks lazily and reopens
    a dead handle, close() on shutdown.
    """

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    def open(self) -> "Database":
        if self._conn is not None:
            return self
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.create_function("REGEXP", 2, _regexp, deterministic=True)
        if self._db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        conn.commit()
        self._conn = conn
        logger.info("Database opened at %s", self._db_path)
        return self

    def connection(self) -> sqlite3.Connection:
        """Return the live connection, reopening it if the health check fails."""
        if self._conn is None:
            return self.open()._conn  # type: ignore[return-value]
        try:
            self._conn.execute("SELECT 1")
        except sqlite3.ProgrammingError:
            logger.warning("Database handle at %s was closed, reopening", self._db_path)
            self._conn = None
            self.open()
        return self._conn  # type: ignore[return-value]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Database closed at %s", self._db_path)

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------


class ConversationDB:
    """Append-only log of processed turns."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ConversationEntry:
        return ConversationEntry(
            id=row["id"],
            user_key=row["user_key"],
            raw_message=row["raw_message"],
            parsed_intent=json.loads(row["parsed_intent"]),
            confidence_score=row["confidence_score"],
            clarifying_question_sent=bool(row["clarifying_question_sent"]),
            recommendations_returned=json.loads(row["recommendations_returned"]),
            bot_response=row["bot_response"],
            created_at=row["created_at"],
        )

    def add_entry(
        self,
        user_key: str,
        raw_message: str,
        parsed_intent: dict[str, Any],
        confidence_score: float,
        clarifying_question_sent: bool,
        recommendations_returned: list[dict[str, Any]],
        bot_response: str,
    ) -> ConversationEntry:
        """Insert one turn. Entries are never updated afterwards."""
        created_at = utc_now_iso()
        conn = self._db.connection()
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO conversations
                    (user_key, raw_message, parsed_intent, confidence_score,
                     clarifying_question_sent, recommendations_returned,
                     bot_response, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_key, raw_message, json.dumps(parsed_intent), confidence_score,
                    int(clarifying_question_sent), json.dumps(recommendations_returned),
                    bot_response, created_at,
                ),
            )
        entry = ConversationEntry(
            id=cursor.lastrowid,
            user_key=user_key,
            raw_message=raw_message,
            parsed_intent=parsed_intent,
            confidence_score=confidence_score,
            clarifying_question_sent=clarifying_question_sent,
            recommendations_returned=recommendations_returned,
            bot_response=bot_response,
            created_at=created_at,
        )
        logger.debug("Conversation #%d logged for %s", entry.id, user_key)
        return entry

    def recent(self, user_key: str, limit: int = 3) -> list[ConversationEntry]:
        """Return the last `limit` entries for a user, newest first."""
        conn = self._db.connection()
        rows = conn.execute(
            """
            SELECT * FROM conversations
            WHERE user_key = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (user_key, limit),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count(self, user_key: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM conversations"
        params: list = []
        if user_key is not None:
            query += " WHERE user_key = ?"
            params.append(user_key)
        return self._db.connection().execute(query, params).fetchone()[0]

    def delete_older_than(self, cutoff: datetime) -> int:
        """Bulk-delete entries created before cutoff. Returns rows removed."""
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None)
        conn = self._db.connection()
        with conn:
            cursor = conn.execute(
                "DELETE FROM conversations WHERE created_at < ?",
                (cutoff.isoformat(timespec="microseconds"),),
            )
        logger.info("Deleted %d conversations older than %s", cursor.rowcount, cutoff.isoformat())
        return cursor.rowcount


# ---------------------------------------------------------------------------
# User profiles
# ---------------------------------------------------------------------------


class UserProfileDB:
    """Per-user preference aggregates, one row per user key."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            user_key=row["user_key"],
            location_counts=json.loads(row["location_counts"]),
            cuisine_counts=json.loads(row["cuisine_counts"]),
            category_counts=json.loads(row["category_counts"]),
            budget_bias_score=row["budget_bias_score"],
            interaction_count=row["interaction_count"],
            last_interaction=row["last_interaction"],
        )

    def get_profile(self, user_key: str) -> UserProfile | None:
        row = self._db.connection().execute(
            "SELECT * FROM user_profiles WHERE user_key = ?", (user_key,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_profile(row)

    def save_profile(self, profile: UserProfile) -> None:
        """Insert or replace the aggregates for profile.user_key."""
        conn = self._db.connection()
        with conn:
            conn.execute(
                """
                INSERT INTO user_profiles
                    (user_key, location_counts, cuisine_counts, category_counts,
                     budget_bias_score, interaction_count, last_interaction, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_key) DO UPDATE SET
                    location_counts   = excluded.location_counts,
                    cuisine_counts    = excluded.cuisine_counts,
                    category_counts   = excluded.category_counts,
                    budget_bias_score = excluded.budget_bias_score,
                    interaction_count = excluded.interaction_count,
                    last_interaction  = excluded.last_interaction
                """,
                (
                    profile.user_key,
                    json.dumps(profile.location_counts),
                    json.dumps(profile.cuisine_counts),
                    json.dumps(profile.category_counts),
                    profile.budget_bias_score,
                    profile.interaction_count,
                    profile.last_interaction,
                    utc_now_iso(),
                ),
            )


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


class RateLimitDB:
    """Per-user fixed request windows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RateLimitRecord:
        return RateLimitRecord(
            user_key=row["user_key"],
            request_count=row["request_count"],
            window_start=row["window_start"],
            last_request=row["last_request"],
        )

    def consume(
        self, user_key: str, now: float, max_requests: int, window_seconds: float,
    ) -> RateLimitRecord:
        """Atomically record one request and return the updated window.

        A new or expired window restarts at count 1. Inside a live window the
        count increments but saturates at max_requests + 1, so a returned
        count above max_requests means the request was over the limit.
        """
        conn = self._db.connection()
        with conn:
            row = conn.execute(
                """
                INSERT INTO rate_limits (user_key, request_count, window_start, last_request)
                VALUES (:user_key, 1, :now, :now)
                ON CONFLICT(user_key) DO UPDATE SET
                    request_count = CASE
                        WHEN :now - window_start > :window THEN 1
                        ELSE MIN(request_count + 1, :max + 1)
                    END,
                    window_start = CASE
                        WHEN :now - window_start > :window THEN :now
                        ELSE window_start
                    END,
                    last_request = :now
                RETURNING user_key, request_count, window_start, last_request
                """,
                {"user_key": user_key, "now": now, "window": window_seconds, "max": max_requests},
            ).fetchall()[0]
        return self._row_to_record(row)

    def get_record(self, user_key: str) -> RateLimitRecord | None:
        row = self._db.connection().execute(
            "SELECT * FROM rate_limits WHERE user_key = ?", (user_key,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def reset_all(self) -> int:
        """Clear every rate-limit window. Returns rows removed."""
        conn = self._db.connection()
        with conn:
            cursor = conn.execute("DELETE FROM rate_limits")
        logger.info("Reset rate limits for %d users", cursor.rowcount)
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Recommendation items
# ---------------------------------------------------------------------------


class ItemDB:
    """Places and events. Raw documents are normalized on insert.

    Filters passed to find_places / find_events are regular expressions,
    matched case-insensitively with the registered REGEXP function.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def _row_to_item(row: sqlite3.Row, kind: str) -> RecommendationItem:
        keys = row.keys()
        return RecommendationItem(
            id=row["id"],
            kind=kind,
            name=row["name"],
            tags=json.loads(row["tags"]),
            location=row["location"],
            price_tier=row["price_tier"] if "price_tier" in keys else row["price"],
            score=row["score"],
            starts_at=row["starts_at"] if "starts_at" in keys else None,
            active=bool(row["active"]) if "active" in keys else True,
            link=row["link"],
            vibe_tags=json.loads(row["vibe_tags"]),
            raw=json.loads(row["doc"]),
        )

    def add_place(self, doc: dict[str, Any]) -> RecommendationItem:
        cols = normalize_place(doc)
        conn = self._db.connection()
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO places (name, location, tags, price_tier, score, link, vibe_tags, doc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cols["name"], cols["location"], json.dumps(cols["tags"], ensure_ascii=False),
                    cols["price_tier"], cols["score"], cols["link"],
                    json.dumps(cols["vibe_tags"], ensure_ascii=False), json.dumps(doc, default=str),
                ),
            )
        return RecommendationItem(id=cursor.lastrowid, kind="place", raw=doc, **cols)

    def add_event(self, doc: dict[str, Any]) -> RecommendationItem:
        cols = normalize_event(doc)
        conn = self._db.connection()
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO events
                    (name, location, tags, price, score, starts_at, active, link, vibe_tags, doc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cols["name"], cols["location"], json.dumps(cols["tags"], ensure_ascii=False),
                    cols["price_tier"], cols["score"], cols["starts_at"],
                    int(cols["active"]), cols["link"],
                    json.dumps(cols["vibe_tags"], ensure_ascii=False), json.dumps(doc, default=str),
                ),
            )
        return RecommendationItem(id=cursor.lastrowid, kind="event", raw=doc, **cols)

    def find_places(
        self,
        location_pattern: str | None = None,
        tag_pattern: str | None = None,
        price_tier: str | None = None,
        limit: int = 10,
    ) -> list[RecommendationItem]:
        """Return places matching all given filters, highest score first."""
        conditions: list[str] = []
        params: list = []
        if location_pattern:
            conditions.append("location REGEXP ?")
            params.append(location_pattern)
        if tag_pattern:
            conditions.append("tags REGEXP ?")
            params.append(tag_pattern)
        if price_tier:
            conditions.append("price_tier = ?")
            params.append(price_tier)

        query = "SELECT * FROM places"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY score DESC, id LIMIT ?"
        params.append(limit)

        rows = self._db.connection().execute(query, params).fetchall()
        return [self._row_to_item(r, "place") for r in rows]

    def find_events(
        self,
        starts_after: str,
        location_pattern: str | None = None,
        tag_pattern: str | None = None,
        limit: int = 10,
    ) -> list[RecommendationItem]:
        """Return active events starting at or after starts_after, soonest first."""
        conditions = ["active = 1", "starts_at IS NOT NULL", "starts_at >= ?"]
        params: list = [starts_after]
        if location_pattern:
            conditions.append("location REGEXP ?")
            params.append(location_pattern)
        if tag_pattern:
            conditions.append("tags REGEXP ?")
            params.append(tag_pattern)

        query = "SELECT * FROM events WHERE " + " AND ".join(conditions)
        query += " ORDER BY starts_at ASC, id LIMIT ?"
        params.append(limit)

        rows = self._db.connection().execute(query, params).fetchall()
        return [self._row_to_item(r, "event") for r in rows]

    def counts(self) -> dict[str, int]:
        """Row counts per catalog table."""
        conn = self._db.connection()
        return {
            "places": conn.execute("SELECT COUNT(*) FROM places").fetchone()[0],
            "events": conn.execute("SELECT COUNT(*) FROM events").fetchone()[0],
        }

    def sample(self, kind: str, limit: int = 3) -> list[RecommendationItem]:
        """First few stored items of one kind, in insertion order."""
        table = {"place": "places", "event": "events"}[kind]
        rows = self._db.connection().execute(
            f"SELECT * FROM {table} ORDER BY id LIMIT ?", (limit,),
        ).fetchall()
        return [self._row_to_item(r, kind) for r in rows]
