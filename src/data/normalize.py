"""
DM Concierge - Document normalization.

The ingestion pipeline is not schema-strict: the same logical field shows
up as "Name" or "name", "priceLevel" or "price_tier", a string or a list.
This adapter maps any such document onto the canonical columns of
RecommendationItem so the query and compose logic never sees the drift.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_NAME_KEYS = ("name", "Name", "title", "displayName")
_PLACE_LOCATION_KEYS = ("fullAddress", "address", "formatted_address", "formattedAddress", "location")
_AREA_KEYS = ("borough", "neighborhood", "neighbourhood", "area")
_PLACE_TAG_KEYS = ("cuisine_tags", "cuisineDescription", "cuisine", "cuisines", "categories", "category")
_PRICE_KEYS = ("price_tier", "priceLevel", "price_level", "price")
_SCORE_KEYS = ("rating_bias_score", "popularity", "score", "rating")
_VIBE_KEYS = ("vibe_tags", "vibes", "vibe")
_LINK_KEYS = ("link", "url", "website", "googleMapsUri")

_EVENT_LOCATION_KEYS = ("location", "venue", "address", "fullAddress")
_EVENT_TAG_KEYS = ("category", "categories", "type", "tags")
_EVENT_DATE_KEYS = ("date_time", "start", "startDate", "start_time", "date")
_EVENT_ACTIVE_KEYS = ("isActive", "is_active", "active")

_GOOGLE_PRICE_LEVELS = {
    "PRICE_LEVEL_FREE": "$",
    "PRICE_LEVEL_INEXPENSIVE": "$",
    "PRICE_LEVEL_MODERATE": "$$",
    "PRICE_LEVEL_EXPENSIVE": "$$$",
    "PRICE_LEVEL_VERY_EXPENSIVE": "$$$$",
}

_TAG_SPLIT = re.compile(r"\s*[,/;|]\s*")


def _first(doc: dict, keys: tuple[str, ...]) -> Any:
    """Return the first present, non-empty value among keys."""
    for key in keys:
        value = doc.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if v not in (None, "") and str(v).strip()]
    return [part for part in _TAG_SPLIT.split(str(value).strip()) if part]


def _price_tier(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        level = int(value)
        return "$" * level if 1 <= level <= 4 else None
    text = str(value).strip()
    if text in _GOOGLE_PRICE_LEVELS:
        return _GOOGLE_PRICE_LEVELS[text]
    if text and set(text) == {"$"} and len(text) <= 4:
        return text
    if text.isdigit():
        return _price_tier(int(text))
    return None


def _score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _active(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)


def to_iso_datetime(value: Any, time_value: Any = None) -> str | None:
    """Normalize a date-ish value to a naive UTC ISO string, or None.

    Accepts datetime/date objects, ISO strings (with or without "Z"),
    Mongo extended JSON ({"$date": ...}) and epoch seconds/milliseconds.
    """
    if isinstance(value, dict) and "$date" in value:
        value = value["$date"]
    if value is None or value == "":
        return None

    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if time_value and "T" not in text and len(text) == 10:
            text = f"{text}T{str(time_value).strip()}"
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable event date: %r", value)
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=0).isoformat()


def _location_text(doc: dict, location_keys: tuple[str, ...]) -> str:
    parts: list[str] = []
    for key in location_keys + _AREA_KEYS:
        value = doc.get(key)
        if isinstance(value, dict):
            value = " ".join(str(v) for v in value.values() if v)
        if value and str(value) not in parts:
            parts.append(str(value))
    return ", ".join(parts)


def normalize_place(doc: dict) -> dict[str, Any]:
    """Map a raw restaurant/place document to canonical item columns."""
    return {
        "name": str(_first(doc, _NAME_KEYS) or "").strip(),
        "location": _location_text(doc, _PLACE_LOCATION_KEYS),
        "tags": _as_list(_first(doc, _PLACE_TAG_KEYS)),
        "price_tier": _price_tier(_first(doc, _PRICE_KEYS)),
        "score": _score(_first(doc, _SCORE_KEYS)),
        "starts_at": None,
        "active": True,
        "link": _first(doc, _LINK_KEYS),
        "vibe_tags": _as_list(_first(doc, _VIBE_KEYS)),
    }


def normalize_event(doc: dict) -> dict[str, Any]:
    """Map a raw event document to canonical item columns."""
    price = doc.get("price")
    return {
        "name": str(_first(doc, _NAME_KEYS) or "").strip(),
        "location": _location_text(doc, _EVENT_LOCATION_KEYS),
        "tags": _as_list(_first(doc, _EVENT_TAG_KEYS)),
        # Event prices are free text ("Free", "$25-40"), kept as-is
        "price_tier": str(price).strip() if price not in (None, "") else None,
        "score": _score(_first(doc, _SCORE_KEYS)),
        "starts_at": to_iso_datetime(_first(doc, _EVENT_DATE_KEYS), doc.get("time")),
        "active": _active(_first(doc, _EVENT_ACTIVE_KEYS)),
        "link": _first(doc, _LINK_KEYS),
        "vibe_tags": _as_list(_first(doc, _VIBE_KEYS)),
    }
