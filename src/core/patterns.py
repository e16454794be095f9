"""
DM Concierge - User Pattern Tracker.

Soft memory: gentle, non-authoritative preference signals accumulated
only after a recommendation was actually delivered. Used for one thing:
deciding whether a returning user gets a short personalized greeting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.core.recommend import price_ordinal
from src.data.models import UserProfile

if TYPE_CHECKING:
    from src.core.intent import IntentRecord
    from src.data.db import UserProfileDB

logger = logging.getLogger(__name__)

GREETING_MIN_INTERACTIONS = 3


@dataclass
class GreetingContext:
    """What a personalized greeting may reference. Nothing else is passed on."""

    top_location: str | None
    top_cuisine: str | None
    current_cuisine: str | None


def _bump(counts: dict[str, int], key: str | None) -> None:
    if not key:
        return
    key = key.strip().lower()
    if key:
        counts[key] = counts.get(key, 0) + 1


def top_key(counts: dict[str, int]) -> str | None:
    """Highest-count key; ties go to the key seen first."""
    best: str | None = None
    best_count = 0
    for key, count in counts.items():
        if count > best_count:
            best, best_count = key, count
    return best


def build_greeting_context(
    profile: UserProfile | None, intent: IntentRecord,
) -> GreetingContext | None:
    """Decide what a greeting may mention for this turn, or None for no greeting.

    Returning users only (>= 3 delivered recommendations). The historical
    top cuisine is dropped when the user is asking for a different one now.
    """
    if profile is None or profile.interaction_count < GREETING_MIN_INTERACTIONS:
        return None

    top_location = top_key(profile.location_counts)
    top_cuisine = top_key(profile.cuisine_counts)
    current = intent.cuisine.strip().lower() if intent.cuisine else None

    if current and top_cuisine and current != top_cuisine.lower():
        top_cuisine = None

    if top_location is None and top_cuisine is None:
        return None
    return GreetingContext(
        top_location=top_location,
        top_cuisine=top_cuisine,
        current_cuisine=current,
    )


class PatternTracker:
    """Reads and updates UserProfile aggregates."""

    def __init__(self, profile_db: UserProfileDB) -> None:
        self._profiles = profile_db

    def get_profile(self, user_key: str) -> UserProfile | None:
        return self._profiles.get_profile(user_key)

    def record_success(self, user_key: str, intent: IntentRecord) -> UserProfile:
        """Fold one delivered recommendation into the user's profile.

        Read-modify-write: two concurrent turns for the same user may lose
        one update, which is acceptable for soft signals.
        """
        profile = self._profiles.get_profile(user_key) or UserProfile(user_key=user_key)

        profile.interaction_count += 1
        profile.last_interaction = datetime.now(timezone.utc).replace(tzinfo=None).isoformat()

        _bump(profile.location_counts, intent.location_hint)
        _bump(profile.cuisine_counts, intent.cuisine)
        _bump(profile.category_counts, intent.category)

        if intent.price_hint:
            ordinal = price_ordinal(intent.price_hint)
            if profile.budget_bias_score is None:
                profile.budget_bias_score = float(ordinal)
            else:
                profile.budget_bias_score = (profile.budget_bias_score + ordinal) / 2

        self._profiles.save_profile(profile)
        logger.info(
            "Patterns updated for %s (interactions=%d, budget_bias=%s)",
            user_key, profile.interaction_count, profile.budget_bias_score,
        )
        return profile
