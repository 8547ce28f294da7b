"""Tests for the vendor SDK wrappers, with the SDK clients mocked out."""

from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest
from google.genai import errors as genai_errors

from airelay.services.llm.providers import AnthropicProvider, GeminiProvider, OpenAIProvider, create_provider
from airelay.services.llm.providers.anthropic import normalize_anthropic_model_name

from conftest import TEST_API_KEY

REQUEST = httpx.Request("POST", "https://api.example.com/v1/messages")


def dumpable(payload: dict) -> MagicMock:
    item = MagicMock()
    item.model_dump.return_value = payload
    return item


class FakeStream:
    """Async iterable SDK stream that records being closed."""

    def __init__(self, items):
        self.items = items
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.items:
            yield item

    async def close(self):
        self.closed = True

    async def aclose(self):
        self.closed = True


class TestFactory:

    def test_creates_known_providers(self):
        assert isinstance(create_provider("openai", TEST_API_KEY), OpenAIProvider)
        assert isinstance(create_provider("anthropic", TEST_API_KEY), AnthropicProvider)
        assert isinstance(create_provider("google", TEST_API_KEY, "gemini-2.5-pro"), GeminiProvider)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_provider("mistral", TEST_API_KEY)

    def test_api_key_required(self):
        with pytest.raises(ValueError):
            OpenAIProvider(api_key="")


class TestOpenAIProvider:

    def test_reasoning_models_omit_temperature(self):
        params = OpenAIProvider(TEST_API_KEY, "gpt-5")._request_params("hi", "be brief", 0.3, 100)
        assert "temperature" not in params
        assert params["max_completion_tokens"] == 100
        assert params["messages"][0] == {"role": "system", "content": "be brief"}

    def test_chat_models_keep_temperature(self):
        params = OpenAIProvider(TEST_API_KEY, "gpt-4o")._request_params("hi", None, 0.3, 100)
        assert params["temperature"] == 0.3
        assert params["messages"] == [{"role": "user", "content": "hi"}]

    async def test_complete_normalizes_response(self):
        provider = OpenAIProvider(TEST_API_KEY, "gpt-4o")
        provider.client = MagicMock()
        provider.client.chat.completions.create = AsyncMock(return_value=dumpable(
            {"choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}]}
        ))

        result = await provider.complete("hi", timeout=1)

        assert result.ok
        assert result.text == "Hello"

    async def test_complete_maps_status_errors(self):
        provider = OpenAIProvider(TEST_API_KEY, "gpt-4o")
        provider.client = MagicMock()
        provider.client.chat.completions.create = AsyncMock(side_effect=openai.AuthenticationError(
            "Incorrect API key provided", response=httpx.Response(401, request=REQUEST), body=None,
        ))

        result = await provider.complete("hi", timeout=1)

        assert not result.ok
        assert result.failure.kind == "http"
        assert result.failure.status_code == 401

    @pytest.mark.parametrize("error,kind", [
        (openai.APITimeoutError(request=REQUEST), "timeout"),
        (openai.APIConnectionError(request=REQUEST), "network"),
    ])
    def test_transport_errors(self, error, kind):
        assert OpenAIProvider(TEST_API_KEY).to_failure(error).kind == kind

    async def test_stream_yields_events_and_closes(self):
        provider = OpenAIProvider(TEST_API_KEY, "gpt-4o")
        stream = FakeStream([
            dumpable({"choices": [{"delta": {"content": "Hi"}, "finish_reason": None}]}),
            dumpable({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
        ])
        provider.client = MagicMock()
        provider.client.chat.completions.create = AsyncMock(return_value=stream)

        events = [event async for event in provider.stream("hi")]

        assert [event.kind for event in events] == ["openai", "openai"]
        assert stream.closed
        assert provider.client.chat.completions.create.call_args.kwargs["stream"] is True


class TestAnthropicProvider:

    @pytest.mark.parametrize("model,expected", [
        ("claude-sonnet-4.5", "claude-sonnet-4-5"),
        ("claude-sonnet-4-5-20250929", "claude-sonnet-4-5-20250929"),
    ])
    def test_model_name_normalization(self, model, expected):
        assert normalize_anthropic_model_name(model) == expected

    def test_temperature_is_clamped_and_system_optional(self):
        provider = AnthropicProvider(TEST_API_KEY, "claude-haiku-4-5-20251001")
        params = provider._request_params("hi", None, 1.7, 64)
        assert params["temperature"] == 1.0
        assert "system" not in params
        assert provider._request_params("hi", "sys", 0.2, 64)["system"] == "sys"

    async def test_complete_maps_overloaded(self):
        provider = AnthropicProvider(TEST_API_KEY)
        provider.client = MagicMock()
        provider.client.messages.create = AsyncMock(side_effect=anthropic.InternalServerError(
            "Overloaded", response=httpx.Response(529, request=REQUEST), body=None,
        ))

        result = await provider.complete("hi", timeout=1)

        assert result.failure.status_code == 529
        assert result.failure.provider == "anthropic"

    async def test_complete_joins_text_blocks(self):
        provider = AnthropicProvider(TEST_API_KEY)
        provider.client = MagicMock()
        provider.client.messages.create = AsyncMock(return_value=dumpable(
            {"type": "message", "content": [{"type": "text", "text": "Plan: "}, {"type": "text", "text": "call Acme"}]}
        ))

        result = await provider.complete("hi", timeout=1)

        assert result.text == "Plan: call Acme"


class TestGeminiProvider:

    def test_strips_aggregator_prefix(self):
        assert GeminiProvider(TEST_API_KEY, "google/gemini-2.5-pro").model == "gemini-2.5-pro"

    def test_maps_api_errors(self):
        error = genai_errors.ClientError(429, {"error": {
            "code": 429, "message": "Resource has been exhausted (e.g. check quota).", "status": "RESOURCE_EXHAUSTED",
        }})
        failure = GeminiProvider(TEST_API_KEY).to_failure(error)
        assert failure.kind == "http"
        assert failure.status_code == 429
        assert "RESOURCE_EXHAUSTED" in failure.message

    async def test_stream_closes_response(self):
        provider = GeminiProvider(TEST_API_KEY)
        stream = FakeStream([dumpable({"candidates": [{"content": {"parts": [{"text": "Hi"}]}, "finish_reason": "STOP"}]})])
        provider.client = MagicMock()
        provider.client.aio.models.generate_content_stream = AsyncMock(return_value=stream)

        events = [event async for event in provider.stream("hi")]

        assert events[0].payload["candidates"][0]["content"]["parts"][0]["text"] == "Hi"
        assert stream.closed
