"""Tests for gatekeeper.core.llm — provider selection and routing."""

from unittest.mock import AsyncMock, patch

import pytest

from gatekeeper.core import llm


@pytest.fixture(autouse=True)
def reset_provider():
    """The provider is a lazy module-level singleton; start each test fresh."""
    llm._provider_fn = None
    yield
    llm._provider_fn = None


class TestSelectProvider:
    def test_unknown_provider_raises(self):
        with patch("gatekeeper.config.settings.LLM_PROVIDER", "mystery"):
            with pytest.raises(ValueError, match="Unknown LLM_PROVIDER"):
                llm._select_provider()

    def test_default_model_used(self):
        fake = AsyncMock()
        with patch.dict(llm._PROVIDERS, {"openai": (fake, "gpt-test")}), \
                patch("gatekeeper.config.settings.LLM_MODEL", ""):
            fn, model, api_key, _ = llm._select_provider()
        assert fn is fake
        assert model == "gpt-test"
        assert api_key == "fake-llm-key-for-tests"

    def test_explicit_model_overrides(self):
        with patch("gatekeeper.config.settings.LLM_MODEL", "gpt-custom"):
            _, model, _, _ = llm._select_provider()
        assert model == "gpt-custom"


class TestComplete:
    @pytest.mark.asyncio
    async def test_routes_to_provider(self):
        fake = AsyncMock(return_value='{"reply": "ok"}')
        with patch.dict(llm._PROVIDERS, {"openai": (fake, "gpt-test")}):
            result = await llm.complete("sys", "hello", max_tokens=50, json_mode=True)

        assert result == '{"reply": "ok"}'
        args = fake.call_args.args
        assert args[1:5] == ("gpt-test", "sys", "hello", 50)
        assert args[6] is True

    @pytest.mark.asyncio
    async def test_provider_selected_once(self):
        fake = AsyncMock(return_value="x")
        with patch.dict(llm._PROVIDERS, {"openai": (fake, "gpt-test")}), \
                patch.object(llm, "_select_provider", wraps=llm._select_provider) as select:
            await llm.complete("sys", "a")
            await llm.complete("sys", "b")
        assert select.call_count == 1
        assert fake.await_count == 2
