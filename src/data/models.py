"""
DM Concierge - Data Models.

Persisted records of the concierge: the conversation log, per-user
preference profiles and rate-limit windows, plus the canonical shape every
recommendation document is normalized into before the core touches it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ConversationEntry:
    """One processed inbound message. Append-only, never mutated.

    Rows older than the retention window are removed by the
    maintenance cleanup job, which filters on created_at.
    """

    user_key: str
    raw_message: str
    parsed_intent: dict[str, Any]
    confidence_score: float
    clarifying_question_sent: bool
    recommendations_returned: list[dict[str, Any]]
    bot_response: str
    created_at: str = ""              # UTC ISO timestamp
    id: int | None = None


@dataclass
class UserProfile:
    """Soft personalization signals accumulated after successful recommendations."""

    user_key: str
    location_counts: dict[str, int] = field(default_factory=dict)
    cuisine_counts: dict[str, int] = field(default_factory=dict)
    category_counts: dict[str, int] = field(default_factory=dict)
    budget_bias_score: float | None = None   # running mean over price ordinal 1-4
    interaction_count: int = 0
    last_interaction: str = ""


@dataclass
class RateLimitRecord:
    """Per-user request window. Timestamps are epoch seconds."""

    user_key: str
    request_count: int
    window_start: float
    last_request: float


@dataclass
class RecommendationItem:
    """A place or an event in canonical form.

    Upstream documents use several historical field names for the same
    thing; src.data.normalize maps them onto these fields.
    """

    id: int
    kind: str                          # "place" | "event"
    name: str
    tags: list[str] = field(default_factory=list)       # cuisine or category
    location: str = ""                                  # address / borough / venue text
    price_tier: str | None = None                       # "$" .. "$$$$" for places
    score: float = 0.0                                  # popularity / rating
    starts_at: str | None = None                        # ISO, events only
    active: bool = True
    link: str | None = None
    vibe_tags: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    def summary_ref(self) -> dict[str, Any]:
        """Compact reference stored in the conversation log."""
        return {"id": self.id, "name": self.name, "type": self.kind}
