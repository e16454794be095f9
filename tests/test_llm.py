"""Tests for src.core.llm: provider routing, timeout and error wrapping."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

import src.core.llm as llm
from src.core.llm import LLMError, LLMTimeoutError, complete


@pytest.fixture(autouse=True)
def reset_provider():
    """Each test selects its own provider."""
    llm._provider_fn = None
    yield
    llm._provider_fn = None


def _use(fn, timeout=8.0):
    return patch("src.core.llm._select_provider", return_value=(fn, "test-model", "key", timeout))


class TestComplete:
    @pytest.mark.asyncio
    async def test_passes_arguments_through(self):
        fn = AsyncMock(return_value="hello")
        with _use(fn):
            result = await complete("sys", "user", max_tokens=42, json_output=True)
        assert result == "hello"
        fn.assert_awaited_once_with("key", "test-model", "sys", "user", 42, True)

    @pytest.mark.asyncio
    async def test_provider_selected_once(self):
        fn = AsyncMock(return_value="ok")
        with _use(fn) as select:
            await complete("s", "u")
            await complete("s", "u")
        select.assert_called_once()

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self):
        fn = AsyncMock(side_effect=RuntimeError("quota exceeded"))
        with _use(fn):
            with pytest.raises(LLMError, match="quota exceeded"):
                await complete("s", "u")

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(*args):
            await asyncio.sleep(1)
            return "late"

        with _use(slow, timeout=0.01):
            with pytest.raises(LLMTimeoutError):
                await complete("s", "u")

    def test_timeout_is_llm_error(self):
        assert issubclass(LLMTimeoutError, LLMError)


class TestSelectProvider:
    def test_default_model_for_gemini(self):
        from src.config import settings
        with patch.object(settings, "LLM_PROVIDER", "gemini"), patch.object(settings, "LLM_MODEL", ""):
            fn, model, api_key, timeout = llm._select_provider()
        assert fn is llm._complete_gemini
        assert model == "gemini-2.5-flash-lite"
        assert api_key == settings.LLM_API_KEY

    def test_explicit_model(self):
        from src.config import settings
        with patch.object(settings, "LLM_PROVIDER", "OpenAI"), patch.object(settings, "LLM_MODEL", "gpt-x"):
            fn, model, _, _ = llm._select_provider()
        assert fn is llm._complete_openai
        assert model == "gpt-x"

    def test_unknown_provider(self):
        from src.config import settings
        with patch.object(settings, "LLM_PROVIDER", "mystery"):
            with pytest.raises(ValueError, match="Unknown LLM_PROVIDER"):
                llm._select_provider()
