"""Tests for src.core.patterns: soft preference signals and greeting context."""

import pytest

from src.core.intent import IntentRecord
from src.core.patterns import PatternTracker, build_greeting_context, top_key
from src.data.models import UserProfile


def _intent(**fields):
    fields.setdefault("kind", "restaurant")
    return IntentRecord(confidence=0.8, action="recommend", **fields)


@pytest.fixture
def tracker(profile_db):
    return PatternTracker(profile_db)


class TestTopKey:
    def test_highest_count(self):
        assert top_key({"queens": 1, "brooklyn": 3}) == "brooklyn"

    def test_tie_goes_to_first_seen(self):
        assert top_key({"queens": 2, "brooklyn": 2}) == "queens"

    def test_empty(self):
        assert top_key({}) is None


# ---------------------------------------------------------------------------
# record_success
# ---------------------------------------------------------------------------


class TestRecordSuccess:
    def test_creates_profile_lazily(self, tracker):
        assert tracker.get_profile("u1") is None
        profile = tracker.record_success("u1", _intent(cuisine="Sushi", location_hint="Brooklyn"))
        assert profile.interaction_count == 1
        assert profile.cuisine_counts == {"sushi": 1}
        assert profile.location_counts == {"brooklyn": 1}
        assert profile.last_interaction
        assert tracker.get_profile("u1") == profile

    def test_counts_accumulate(self, tracker):
        tracker.record_success("u1", _intent(cuisine="thai", location_hint="Queens"))
        tracker.record_success("u1", _intent(cuisine="Thai", location_hint="brooklyn"))
        profile = tracker.record_success("u1", _intent(kind="event", category="comedy"))
        assert profile.interaction_count == 3
        assert profile.cuisine_counts == {"thai": 2}
        assert profile.location_counts == {"queens": 1, "brooklyn": 1}
        assert profile.category_counts == {"comedy": 1}

    def test_budget_bias_starts_unset(self, tracker):
        profile = tracker.record_success("u1", _intent(cuisine="thai"))
        assert profile.budget_bias_score is None

    def test_budget_bias_first_signal_then_damped(self, tracker):
        first = tracker.record_success("u1", _intent(cuisine="thai", price_hint="cheap"))
        assert first.budget_bias_score == 1.0
        second = tracker.record_success("u1", _intent(cuisine="thai", price_hint="splurge"))
        assert second.budget_bias_score == pytest.approx(2.5)

    def test_users_isolated(self, tracker):
        tracker.record_success("a", _intent(cuisine="thai"))
        assert tracker.get_profile("b") is None


# ---------------------------------------------------------------------------
# Greeting context
# ---------------------------------------------------------------------------


def _profile(count=5, cuisines=None, locations=None):
    return UserProfile(
        user_key="u1",
        cuisine_counts=cuisines if cuisines is not None else {"italian": 4, "thai": 1},
        location_counts=locations if locations is not None else {"manhattan": 3},
        interaction_count=count,
    )


class TestGreetingContext:
    def test_new_user_gets_no_greeting(self):
        assert build_greeting_context(None, _intent(cuisine="thai")) is None

    def test_fewer_than_three_interactions(self):
        assert build_greeting_context(_profile(count=2), _intent(cuisine="italian")) is None

    def test_returning_user(self):
        context = build_greeting_context(_profile(), _intent(cuisine="Italian"))
        assert context.top_location == "manhattan"
        assert context.top_cuisine == "italian"
        assert context.current_cuisine == "italian"

    def test_different_cuisine_suppresses_history(self):
        context = build_greeting_context(_profile(), _intent(cuisine="Mexican"))
        assert context is not None
        assert context.top_cuisine is None
        assert "italian" not in repr(context).lower()
        assert context.current_cuisine == "mexican"

    def test_no_current_cuisine_keeps_history(self):
        context = build_greeting_context(_profile(), _intent(kind="event", category="jazz"))
        assert context.top_cuisine == "italian"

    def test_nothing_left_to_mention(self):
        profile = _profile(cuisines={"italian": 4}, locations={})
        assert build_greeting_context(profile, _intent(cuisine="mexican")) is None
