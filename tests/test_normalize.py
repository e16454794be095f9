"""Tests for src.data.normalize: mapping drifting documents onto item columns."""

from datetime import date, datetime, timezone

import pytest

from src.data.normalize import normalize_event, normalize_place, to_iso_datetime


class TestNormalizePlace:
    def test_capitalized_keys(self):
        cols = normalize_place({
            "Name": "  Via Carota ",
            "fullAddress": "51 Grove St",
            "borough": "Manhattan",
            "cuisineDescription": "Italian",
            "priceLevel": "PRICE_LEVEL_MODERATE",
            "rating_bias_score": "4.7",
        })
        assert cols["name"] == "Via Carota"
        assert cols["location"] == "51 Grove St, Manhattan"
        assert cols["tags"] == ["Italian"]
        assert cols["price_tier"] == "$$"
        assert cols["score"] == pytest.approx(4.7)
        assert cols["active"] is True
        assert cols["starts_at"] is None

    def test_list_tags_and_vibes(self):
        cols = normalize_place({"name": "x", "cuisine_tags": ["Thai", "", "Noodles"], "vibes": "cozy, date night"})
        assert cols["tags"] == ["Thai", "Noodles"]
        assert cols["vibe_tags"] == ["cozy", "date night"]

    @pytest.mark.parametrize("price, tier", [
        (2, "$$"), ("3", "$$$"), ("$$$$", "$$$$"), ("PRICE_LEVEL_INEXPENSIVE", "$"),
        (0, None), (7, None), ("n/a", None), (None, None),
    ])
    def test_price_tiers(self, price, tier):
        assert normalize_place({"name": "x", "price": price})["price_tier"] == tier

    def test_missing_fields_defaults(self):
        cols = normalize_place({})
        assert cols["name"] == ""
        assert cols["location"] == ""
        assert cols["tags"] == []
        assert cols["score"] == 0.0
        assert cols["link"] is None

    def test_nested_location_dict(self):
        cols = normalize_place({"name": "x", "location": {"street": "1 Main St", "city": "Brooklyn"}})
        assert cols["location"] == "1 Main St Brooklyn"

    def test_link_keys(self):
        assert normalize_place({"googleMapsUri": "https://maps/x"})["link"] == "https://maps/x"


class TestNormalizeEvent:
    def test_event_fields(self):
        cols = normalize_event({
            "title": "Late Show",
            "venue": "Comedy Cellar",
            "category": "Comedy",
            "date_time": "2026-03-01T21:30:00Z",
            "price": "$25",
            "url": "https://example.com/e",
            "is_active": True,
        })
        assert cols["name"] == "Late Show"
        assert cols["location"] == "Comedy Cellar"
        assert cols["tags"] == ["Comedy"]
        assert cols["starts_at"] == "2026-03-01T21:30:00"
        assert cols["price_tier"] == "$25"
        assert cols["link"] == "https://example.com/e"
        assert cols["active"] is True

    def test_separate_date_and_time(self):
        cols = normalize_event({"name": "x", "date": "2026-03-01", "time": "19:00"})
        assert cols["starts_at"] == "2026-03-01T19:00:00"

    @pytest.mark.parametrize("flag, active", [(False, False), ("false", False), ("0", False), ("yes", True), (None, True)])
    def test_active_flags(self, flag, active):
        assert normalize_event({"name": "x", "isActive": flag})["active"] is active

    def test_free_price(self):
        assert normalize_event({"name": "x", "price": "Free"})["price_tier"] == "Free"
        assert normalize_event({"name": "x"})["price_tier"] is None


class TestToIsoDatetime:
    def test_mongo_extended_json(self):
        assert to_iso_datetime({"$date": "2026-03-01T12:00:00.000Z"}) == "2026-03-01T12:00:00"

    def test_epoch_seconds_and_millis(self):
        seconds = datetime(2026, 3, 1, 12, tzinfo=timezone.utc).timestamp()
        assert to_iso_datetime(seconds) == "2026-03-01T12:00:00"
        assert to_iso_datetime(seconds * 1000) == "2026-03-01T12:00:00"

    def test_offset_converted_to_utc(self):
        assert to_iso_datetime("2026-03-01T20:00:00-05:00") == "2026-03-02T01:00:00"

    def test_date_object(self):
        assert to_iso_datetime(date(2026, 3, 1)) == "2026-03-01T00:00:00"

    @pytest.mark.parametrize("value", [None, "", "next friday"])
    def test_unparseable(self, value):
        assert to_iso_datetime(value) is None
