"""
Shared test fixtures.

Settings come from AIRELAY_* environment variables, so they are pinned here
before anything imports the application. Redis is left unconfigured so
counters use the in-memory store unless a test injects fakeredis.
"""

import os
from datetime import datetime, timedelta, timezone

os.environ["AIRELAY_ENCRYPTION_KEY"] = "0123456789abcdef" * 4
os.environ["AIRELAY_REDIS_URL"] = ""
os.environ["AIRELAY_DATABASE_URL"] = ""
os.environ["AIRELAY_ENVIRONMENT"] = "test"

import pytest

from airelay.core import rate_limiter
from airelay.core.config import get_settings
from airelay.core.encryption import encrypt_api_key
from airelay.core.redis import reset_redis_client
from airelay.services.llm.normalizers import ProviderEvent
from airelay.services.llm.provider_registry import ProviderConfig
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.results import ProviderFailure

TEST_API_KEY = "sk-test-0123456789abcdefghijklmnop"
BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_global_state():
    """Fresh settings, Redis client and fallback counters for every test."""
    get_settings.cache_clear()
    reset_redis_client()
    rate_limiter._fallback_store.clear()
    yield
    get_settings.cache_clear()
    reset_redis_client()
    rate_limiter._fallback_store.clear()


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_config(
    provider_type: str,
    model: str = "",
    *,
    minutes: int = 0,
    api_key: str = TEST_API_KEY,
    config_id: str | None = None,
) -> ProviderConfig:
    """Provider row created ``minutes`` after BASE_TIME, key encrypted with the test key."""
    return ProviderConfig(
        id=config_id or f"{provider_type}-{minutes}",
        provider_type=provider_type,
        model=model,
        api_key_encrypted=encrypt_api_key(api_key),
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


class ScriptedError(Exception):
    """Raised by ScriptedProvider; carries the failure it should map to."""

    def __init__(self, failure: ProviderFailure):
        super().__init__(failure.message)
        self.failure = failure


def openai_delta(content: str, finish_reason: str | None = None) -> ProviderEvent:
    return ProviderEvent("openai", {"choices": [{"delta": {"content": content}, "finish_reason": finish_reason}]})


class ScriptedProvider(BaseLLMProvider):
    """Provider double that replays a fixed answer, failure or event script.
    
    ``chunks`` drives ``stream``; entries may be strings, a ProviderFailure
    (raised mid-stream) or a float (seconds to sleep before the next read).
    """

    kind = "openai"

    def __init__(
        self,
        kind: str = "openai",
        *,
        text: str | None = None,
        failure: ProviderFailure | None = None,
        chunks: list | None = None,
    ):
        super().__init__(api_key=TEST_API_KEY, model="scripted")
        self.kind = kind
        self.text = text
        self.failure = failure
        self.chunks = chunks
        self.calls = 0
        self.stream_opened = False
        self.stream_closed = False

    async def generate(self, prompt, *, system_prompt=None, temperature=0.7, max_tokens=2048):
        self.calls += 1
        if self.failure is not None:
            raise ScriptedError(self.failure)
        return ProviderEvent("openai", {
            "choices": [{"message": {"content": self.text or ""}, "finish_reason": "stop"}]
        })

    async def stream(self, prompt, *, system_prompt=None, temperature=0.7, max_tokens=2048):
        import asyncio

        self.calls += 1
        self.stream_opened = True
        try:
            if self.failure is not None and self.chunks is None:
                raise ScriptedError(self.failure)
            script = self.chunks if self.chunks is not None else [self.text or ""]
            for item in script:
                if isinstance(item, ProviderFailure):
                    raise ScriptedError(item)
                if isinstance(item, (int, float)):
                    await asyncio.sleep(item)
                    continue
                yield openai_delta(item)
            yield openai_delta("", finish_reason="stop")
        finally:
            self.stream_closed = True

    def _vendor_failure(self, error):
        if isinstance(error, ScriptedError):
            return error.failure
        return None


class ProviderFactory:
    """Hands out scripted providers by provider type and records call order."""

    def __init__(self, providers: dict[str, ScriptedProvider]):
        self.providers = providers
        self.created: list[str] = []

    def __call__(self, provider_type: str, api_key: str, model: str | None = None) -> ScriptedProvider:
        self.created.append(provider_type)
        return self.providers[provider_type]


class RecordingSink:
    """StreamSink that keeps every event; optionally saturated."""

    def __init__(self, saturated: bool = False):
        self.events: list[dict] = []
        self.saturated = saturated

    def is_saturated(self) -> bool:
        return self.saturated

    async def send(self, event: dict) -> None:
        self.events.append(event)

    @property
    def content_events(self) -> list[dict]:
        return [e for e in self.events if "content" in e]

    @property
    def terminal_events(self) -> list[dict]:
        return [e for e in self.events if e.get("error") or e.get("type") == "done"]
