"""Tests for src.core.composer: DM unit formatting and greetings (LLM mocked)."""

import pytest
from unittest.mock import AsyncMock, patch

from src.core.composer import (
    CLOSING_PROMPT,
    FRAMING_FALLBACK,
    MAX_MESSAGE_UNITS,
    NO_RESULTS_MESSAGE,
    compose_messages,
    describe_item,
    generate_greeting,
    no_results_messages,
    split_messages,
)
from src.core.intent import IntentRecord
from src.core.llm import LLMError, LLMTimeoutError
from src.core.patterns import GreetingContext
from src.data.models import RecommendationItem


def _place(i, name=None):
    return RecommendationItem(
        id=i, kind="place", name=name or f"Place {i}", tags=["Japanese"],
        location="Williamsburg, Brooklyn", price_tier="$$",
    )


def _event(i):
    return RecommendationItem(
        id=i, kind="event", name=f"Show {i}", tags=["Comedy"], location="Comedy Cellar",
        price_tier="$25", starts_at="2026-03-01T21:00:00", link="https://example.com/s",
    )


SUSHI = IntentRecord(kind="restaurant", cuisine="sushi", location_hint="Brooklyn",
                     confidence=0.8, action="recommend")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSplitMessages:
    def test_splits_and_trims(self):
        assert split_messages(" a ||| b|||c ") == ["a", "b", "c"]

    def test_drops_empty_units(self):
        assert split_messages("a ||| ||| |||b") == ["a", "b"]

    def test_empty(self):
        assert split_messages("") == []


class TestDescribeItem:
    def test_place_line(self):
        line = describe_item(1, _place(1, "Omen"))
        assert line.startswith("1. Name: Omen")
        assert "Cuisine: Japanese" in line
        assert "Price: $$" in line

    def test_event_line(self):
        line = describe_item(2, _event(7))
        assert "Date: 2026-03-01T21:00:00" in line
        assert "Link: https://example.com/s" in line

    def test_missing_fields_marked(self):
        item = RecommendationItem(id=1, kind="place", name="Bare")
        assert "Price: N/A" in describe_item(1, item)


class TestNoResults:
    def test_exactly_one_canonical_message(self):
        assert no_results_messages() == [NO_RESULTS_MESSAGE]

    @pytest.mark.asyncio
    async def test_empty_items_never_call_model(self):
        mock = AsyncMock()
        with patch("src.core.composer.complete", mock):
            result = await compose_messages([], SUSHI)
        assert result == [NO_RESULTS_MESSAGE]
        mock.assert_not_called()


# ---------------------------------------------------------------------------
# compose_messages
# ---------------------------------------------------------------------------


class TestComposeMessages:
    @pytest.mark.asyncio
    async def test_splits_model_output(self):
        text = f"A calm pick for tonight. ||| Place 1 details ||| Why it matters ||| {CLOSING_PROMPT}"
        with patch("src.core.composer.complete", AsyncMock(return_value=text)):
            result = await compose_messages([_place(1)], SUSHI)
        assert result == ["A calm pick for tonight.", "Place 1 details", "Why it matters", CLOSING_PROMPT]

    @pytest.mark.asyncio
    async def test_only_two_items_sent_to_model(self):
        mock = AsyncMock(return_value="a ||| b")
        with patch("src.core.composer.complete", mock):
            await compose_messages([_place(1), _place(2), _place(3)], SUSHI)
        user_message = mock.call_args.kwargs["user_message"]
        assert "Place 1" in user_message and "Place 2" in user_message
        assert "Place 3" not in user_message
        assert '"sushi in Brooklyn"' in user_message

    @pytest.mark.asyncio
    async def test_caps_units_keeping_closing(self):
        text = " ||| ".join(f"unit {i}" for i in range(8))
        with patch("src.core.composer.complete", AsyncMock(return_value=text)):
            result = await compose_messages([_place(1), _place(2)], SUSHI)
        assert len(result) == MAX_MESSAGE_UNITS
        assert result[0] == "unit 0"
        assert result[-1] == "unit 7"

    @pytest.mark.asyncio
    async def test_no_delimiter_single_unit(self):
        with patch("src.core.composer.complete", AsyncMock(return_value="One calm paragraph.")):
            result = await compose_messages([_place(1)], SUSHI)
        assert result == ["One calm paragraph."]

    @pytest.mark.asyncio
    async def test_empty_model_output_falls_back(self):
        with patch("src.core.composer.complete", AsyncMock(return_value="  |||  ")):
            result = await compose_messages([_place(1)], SUSHI)
        assert result == [FRAMING_FALLBACK, CLOSING_PROMPT]

    @pytest.mark.asyncio
    async def test_model_failure_propagates(self):
        with patch("src.core.composer.complete", AsyncMock(side_effect=LLMError("down"))):
            with pytest.raises(LLMError):
                await compose_messages([_place(1)], SUSHI)


# ---------------------------------------------------------------------------
# generate_greeting
# ---------------------------------------------------------------------------


class TestGenerateGreeting:
    @pytest.mark.asyncio
    async def test_no_context_no_call(self):
        mock = AsyncMock()
        with patch("src.core.composer.complete", mock):
            assert await generate_greeting(None) is None
        mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_line_only(self):
        context = GreetingContext(top_location="brooklyn", top_cuisine="sushi", current_cuisine="sushi")
        mock = AsyncMock(return_value='"Good to see you again."\nSecond line')
        with patch("src.core.composer.complete", mock):
            assert await generate_greeting(context) == "Good to see you again."
        facts = mock.call_args.kwargs["user_message"]
        assert "brooklyn" in facts and "sushi" in facts

    @pytest.mark.asyncio
    async def test_suppressed_cuisine_never_mentioned(self):
        context = GreetingContext(top_location="manhattan", top_cuisine=None, current_cuisine="mexican")
        mock = AsyncMock(return_value="Welcome back.")
        with patch("src.core.composer.complete", mock):
            await generate_greeting(context)
        facts = mock.call_args.kwargs["user_message"].lower()
        assert "italian" not in facts
        assert "mexican" in facts

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [LLMError("down"), LLMTimeoutError("slow")])
    async def test_failure_yields_none(self, exc):
        context = GreetingContext(top_location="queens", top_cuisine=None, current_cuisine=None)
        with patch("src.core.composer.complete", AsyncMock(side_effect=exc)):
            assert await generate_greeting(context) is None

    @pytest.mark.asyncio
    async def test_blank_output_yields_none(self):
        context = GreetingContext(top_location="queens", top_cuisine=None, current_cuisine=None)
        with patch("src.core.composer.complete", AsyncMock(return_value="   \n")):
            assert await generate_greeting(context) is None
