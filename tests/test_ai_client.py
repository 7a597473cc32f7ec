"""Unit tests for AsyncAIClient: configuration, completions and error mapping."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import anthropic
import httpx
import pytest

from backend.services.ai_client import HELICONE_BASE_URL, AIServiceError, AsyncAIClient

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


def _response(*blocks, stop_reason="end_turn"):
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=120, output_tokens=45),
    )


def _text(text):
    return SimpleNamespace(type="text", text=text)


class TestAsyncAIClientConfiguration:
    @patch("backend.services.ai_client.anthropic.AsyncAnthropic")
    def test_basic_client(self, mock_anthropic_cls):
        """Client without Helicone uses standard config."""
        AsyncAIClient(api_key="sk-test-123")

        mock_anthropic_cls.assert_called_once_with(api_key="sk-test-123", max_retries=2, timeout=60.0)

    @patch("backend.services.ai_client.anthropic.AsyncAnthropic")
    def test_helicone_enabled(self, mock_anthropic_cls):
        """Helicone enabled adds base_url and auth header."""
        AsyncAIClient(api_key="sk-test-123", helicone_api_key="hl-test-key", helicone_enabled=True)

        call_kwargs = mock_anthropic_cls.call_args[1]
        assert call_kwargs["base_url"] == HELICONE_BASE_URL
        assert call_kwargs["default_headers"]["Helicone-Auth"] == "Bearer hl-test-key"

    @patch("backend.services.ai_client.anthropic.AsyncAnthropic")
    def test_helicone_enabled_no_key(self, mock_anthropic_cls):
        """Helicone enabled but no key doesn't add proxy."""
        AsyncAIClient(api_key="sk-test-123", helicone_api_key=None, helicone_enabled=True)

        assert "base_url" not in mock_anthropic_cls.call_args[1]

    @patch("backend.services.ai_client.anthropic.AsyncAnthropic")
    def test_retry_and_timeout_are_configurable(self, mock_anthropic_cls):
        AsyncAIClient(api_key="sk-test", max_retries=5, timeout=15)

        call_kwargs = mock_anthropic_cls.call_args[1]
        assert call_kwargs["max_retries"] == 5
        assert call_kwargs["timeout"] == 15


class TestComplete:
    @pytest.fixture
    def client(self):
        with patch("backend.services.ai_client.anthropic.AsyncAnthropic") as mock_cls:
            mock_cls.return_value.messages.create = AsyncMock()
            yield AsyncAIClient(api_key="sk-test", default_model="claude-sonnet-4-20250514")

    @pytest.mark.asyncio
    async def test_joins_text_blocks(self, client):
        client._client.messages.create.return_value = _response(
            _text('{"names": '), SimpleNamespace(type="tool_use"), _text("[]}")
        )

        text = await client.complete([{"role": "user", "content": "hi"}], system="sys")

        assert text == '{"names": []}'

    @pytest.mark.asyncio
    async def test_passes_prompt_parameters(self, client):
        client._client.messages.create.return_value = _response(_text("ok"))
        messages = [{"role": "user", "content": "Analyze"}]

        await client.complete(messages, system="You are an expert", max_tokens=2500, temperature=0.4)

        client._client.messages.create.assert_awaited_once_with(
            model="claude-sonnet-4-20250514",
            max_tokens=2500,
            temperature=0.4,
            system="You are an expert",
            messages=messages,
        )

    @pytest.mark.asyncio
    async def test_model_override(self, client):
        client._client.messages.create.return_value = _response(_text("ok"))
        await client.complete([], system="s", model="claude-opus-4-20250514")
        assert client._client.messages.create.call_args[1]["model"] == "claude-opus-4-20250514"

    @pytest.mark.asyncio
    async def test_no_text_returns_empty_string(self, client):
        client._client.messages.create.return_value = _response(stop_reason="max_tokens")
        assert await client.complete([], system="s") == ""

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_ai_service_error(self, client):
        request = httpx.Request("POST", ANTHROPIC_URL)
        client._client.messages.create.side_effect = anthropic.RateLimitError(
            "slow down", response=httpx.Response(429, request=request), body=None
        )

        with pytest.raises(AIServiceError) as exc_info:
            await client.complete([], system="s")

        assert exc_info.value.error_type == "rate_limit"

    @pytest.mark.asyncio
    async def test_api_error_maps_to_ai_service_error(self, client):
        client._client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", ANTHROPIC_URL)
        )

        with pytest.raises(AIServiceError) as exc_info:
            await client.complete([], system="s")

        assert exc_info.value.error_type == "api_error"

    @pytest.mark.asyncio
    async def test_unexpected_error_maps_to_internal_error(self, client):
        client._client.messages.create.side_effect = RuntimeError("boom")

        with pytest.raises(AIServiceError) as exc_info:
            await client.complete([], system="s")

        assert exc_info.value.error_type == "internal_error"
        assert "boom" not in str(exc_info.value)
