"""
DM Concierge - Recommendation Query Engine.

Maps an IntentRecord to a short, ranked list of places or events.

Upstream location and category data is free text with inconsistent casing
and venue names baked in, so every filter is a case-insensitive containment
match rather than an equality check. Alias tables widen a specific term
("sushi", "standup") to the broad category the data is tagged with.

Pipeline (both entity types):
  filter location → filter tag → (places) filter price tier
  → fetch up to 10 → stable vibe re-rank → cap
"""

from __future__ import annotations

import logging
import re
import sqlite3
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterable
from zoneinfo import ZoneInfo

if TYPE_CHECKING:
    from src.core.intent import IntentRecord
    from src.data.db import ItemDB
    from src.data.models import RecommendationItem

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 10


class QueryError(Exception):
    """Raised when the item store cannot be queried (distinct from zero results)."""


# ---------------------------------------------------------------------------
# Alias tables
# ---------------------------------------------------------------------------


class AliasTable:
    """Word → canonical category mapping.

    canonical() accepts the exact word or any free text containing a known
    alias as a whole word ("spicy ramen" → "japanese"); longer aliases win.
    """

    def __init__(self, name: str, groups: dict[str, Iterable[str]]) -> None:
        self.name = name
        self._mapping: dict[str, str] = {}
        self._canonicals: set[str] = set()
        for canonical, aliases in groups.items():
            canonical = canonical.lower()
            self._canonicals.add(canonical)
            for alias in aliases:
                self._mapping[alias.lower()] = canonical
        self._by_length = sorted(self._mapping, key=len, reverse=True)

    def __contains__(self, term: object) -> bool:
        return isinstance(term, str) and self.canonical(term) is not None

    def __len__(self) -> int:
        return len(self._mapping)

    @staticmethod
    def _clean(term: str) -> str:
        return " ".join(term.strip().lower().split())

    def canonical(self, term: str | None) -> str | None:
        if not term:
            return None
        cleaned = self._clean(term)
        if cleaned in self._canonicals:
            return cleaned
        if cleaned in self._mapping:
            return self._mapping[cleaned]
        for alias in self._by_length:
            if re.search(rf"(?<!\w){re.escape(alias)}(?!\w)", cleaned):
                return self._mapping[alias]
        return None

    def aliases_of(self, canonical: str) -> list[str]:
        canonical = canonical.lower()
        return [alias for alias, target in self._mapping.items() if target == canonical]

    def pattern(self, term: str) -> str:
        """Regex alternation matching the raw term or its category.

        A term that is itself a category also matches that category's aliases.
        """
        cleaned = self._clean(term)
        alternatives = [cleaned]
        canonical = self.canonical(cleaned)
        if canonical and canonical != cleaned:
            alternatives.append(canonical)
        elif canonical == cleaned:
            alternatives.extend(self.aliases_of(canonical))
        return "|".join(re.escape(a) for a in dict.fromkeys(alternatives))


CUISINE_ALIASES = AliasTable("cuisine", {
    "japanese": ["sushi", "sashimi", "omakase", "ramen", "udon", "izakaya", "yakitori", "tempura"],
    "chinese": ["dim sum", "dumplings", "dumpling", "szechuan", "sichuan", "cantonese", "hot pot"],
    "korean": ["korean bbq", "kbbq", "bibimbap"],
    "vietnamese": ["pho", "banh mi"],
    "thai": ["pad thai", "green curry"],
    "mexican": ["tacos", "taco", "burrito", "burritos", "tamales", "mezcal"],
    "italian": ["pizza", "pasta", "trattoria", "risotto", "gelato"],
    "indian": ["curry", "biryani", "tandoori", "dosa"],
    "middle eastern": ["falafel", "shawarma", "hummus", "kebab"],
    "american": ["burgers", "burger", "bbq", "barbecue", "wings", "diner"],
    "seafood": ["oysters", "lobster", "fish"],
    "bakery": ["bagels", "bagel", "croissant", "pastries", "pastry"],
    "cafe": ["coffee", "espresso", "brunch spot"],
})

EVENT_CATEGORY_ALIASES = AliasTable("event category", {
    "sports": ["basketball", "baseball", "football", "soccer", "hockey", "knicks", "nets",
               "yankees", "mets", "rangers"],
    "comedy": ["standup", "stand-up", "stand up", "improv", "comedian", "comedy show"],
    "music": ["concert", "gig", "live music", "jazz", "dj", "band", "hip hop", "indie", "orchestra"],
    "nightlife": ["club", "clubbing", "party", "bar", "bars", "drinks", "dancing", "rave"],
    "art": ["gallery", "museum", "exhibit", "exhibition", "art show"],
    "theater": ["broadway", "off-broadway", "play", "musical", "opera", "ballet", "theatre"],
    "film": ["movie", "movies", "cinema", "screening", "film festival"],
    "family": ["kids", "children", "family friendly", "family-friendly", "toddler"],
})

LOCATION_ALIASES = AliasTable("location", {
    "brooklyn": ["bk", "bklyn"],
    "manhattan": ["downtown manhattan", "uptown", "midtown"],
    "bronx": ["the bronx", "bx"],
    "queens": ["qns"],
    "staten island": ["si", "staten"],
})

PRICE_TIERS = AliasTable("price", {
    "$": ["cheap", "affordable", "budget", "inexpensive", "cheap eats", "low-key"],
    "$$": ["moderate", "mid-range", "midrange", "mid", "reasonable"],
    "$$$": ["upscale", "expensive", "nice", "pricey"],
    "$$$$": ["fancy", "splurge", "luxury", "high-end", "fine dining"],
})

_BROAD_LOCATIONS = {
    "citywide", "city wide", "city-wide", "anywhere", "any", "everywhere", "all",
    "nyc", "new york", "new york city", "all boroughs", "any borough",
    "no preference", "don't care", "dont care", "doesn't matter", "wherever",
}


def is_broad_location(hint: str | None) -> bool:
    """True when the hint means "no location filter" (citywide, anywhere, ...)."""
    if not hint:
        return False
    cleaned = " ".join(re.sub(r"[^\w\s'-]", " ", hint.lower()).split())
    if cleaned in _BROAD_LOCATIONS:
        return True
    return any(marker in cleaned for marker in ("citywide", "anywhere", "no preference", "don't care"))


def normalize_price(hint: str | None) -> str | None:
    """Map a price hint to a tier symbol "$".."$$$$", or None if unrecognized."""
    if not hint:
        return None
    text = hint.strip()
    if text and set(text) == {"$"} and len(text) <= 4:
        return text
    if text.isdigit() and 1 <= int(text) <= 4:
        return "$" * int(text)
    return PRICE_TIERS.canonical(text)


def price_ordinal(hint: str | None) -> int:
    """Ordinal 1-4 for a price hint; unrecognized hints sit in the middle (2)."""
    tier = normalize_price(hint)
    return len(tier) if tier else 2


def location_pattern(hint: str | None) -> str | None:
    """Containment pattern for a location hint, None when it should not filter."""
    if not hint or is_broad_location(hint):
        return None
    # Whole words only: short aliases ("si", "bx") must not match inside street names.
    return rf"(?<!\w)(?:{LOCATION_ALIASES.pattern(hint)})(?!\w)"


def local_today(tz_name: str, now: datetime | None = None) -> date:
    """Calendar date in tz_name. Stored event times are naive local times."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


def rerank_by_vibe(items: list[RecommendationItem], vibe: str | None) -> list[RecommendationItem]:
    """Stable re-rank: items whose tags mention the vibe move to the front."""
    if not vibe or not items:
        return list(items)
    token = vibe.strip().lower()

    def _matches(item: RecommendationItem) -> bool:
        return any(token in tag.lower() for tag in item.vibe_tags + item.tags)

    return sorted(items, key=lambda item: 0 if _matches(item) else 1)


# ---------------------------------------------------------------------------
# Query engine
# ---------------------------------------------------------------------------


class RecommendationEngine:
    """Resolve intents against the item store."""

    def __init__(
        self,
        item_db: ItemDB,
        cap: int | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        from src.config import settings
        if cap is None:
            cap = settings.RECOMMENDATION_CAP
        if not 3 <= cap <= 4:
            raise ValueError(f"cap must be 3 or 4, got {cap}")

        self._items = item_db
        self._cap = cap
        tz_name = settings.TIMEZONE
        self._today = today or (lambda: local_today(tz_name))

    @property
    def cap(self) -> int:
        return self._cap

    async def query(self, intent: IntentRecord) -> list[RecommendationItem]:
        if intent.kind == "restaurant":
            return await self.query_places(intent)
        if intent.kind == "event":
            return await self.query_events(intent)
        return []

    async def query_places(self, intent: IntentRecord) -> list[RecommendationItem]:
        term = intent.cuisine or intent.category
        tier = normalize_price(intent.price_hint)
        if intent.price_hint and tier is None:
            logger.info("Ignoring unrecognized price hint '%s'", intent.price_hint)

        try:
            candidates = self._items.find_places(
                location_pattern=location_pattern(intent.location_hint),
                tag_pattern=CUISINE_ALIASES.pattern(term) if term else None,
                price_tier=tier,
                limit=CANDIDATE_LIMIT,
            )
        except sqlite3.Error as exc:
            raise QueryError(f"Place query failed: {exc}") from exc

        results = rerank_by_vibe(candidates, intent.vibe)[: self._cap]
        logger.info(
            "Place query (location=%s, cuisine=%s, price=%s): %d candidates, %d returned",
            intent.location_hint, term, tier, len(candidates), len(results),
        )
        return results

    async def query_events(self, intent: IntentRecord) -> list[RecommendationItem]:
        term = intent.category or intent.cuisine
        starts_after = datetime.combine(self._today(), datetime.min.time()).isoformat()

        try:
            candidates = self._items.find_events(
                starts_after=starts_after,
                location_pattern=location_pattern(intent.location_hint),
                tag_pattern=EVENT_CATEGORY_ALIASES.pattern(term) if term else None,
                limit=CANDIDATE_LIMIT,
            )
        except sqlite3.Error as exc:
            raise QueryError(f"Event query failed: {exc}") from exc

        results = rerank_by_vibe(candidates, intent.vibe)[: self._cap]
        logger.info(
            "Event query (location=%s, category=%s, from=%s): %d candidates, %d returned",
            intent.location_hint, term, starts_after, len(candidates), len(results),
        )
        return results
