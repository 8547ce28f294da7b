# Crucible Community Edition
# Copyright (C) 2025 Roundtable Labs Pty Ltd
#
# Licensed under AGPL-3.0. See LICENSE file for details.
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Relay a provider's incremental output to the client transport.

Each upstream read gets its own watchdog (``asyncio.wait_for``), so a hung
provider and a silently vanished client both surface as a stalled read. The
upstream reader is always closed, including on cancellation.
"""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from airelay.services.llm.classifier import ErrorCode, classify_failure
from airelay.services.llm.normalizers import MalformedEventError, ProviderEvent, normalize_event
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.results import ProviderFailure

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_SECONDS = 45.0


class StreamSink(Protocol):
    """Output side of a streaming session."""

    def is_saturated(self) -> bool: ...

    async def send(self, event: dict[str, Any]) -> None: ...


class QueueStreamSink:
    """Hands events to the HTTP response generator through an asyncio queue.
    
    ``max_pending`` is a soft capacity: once that many events are waiting the
    sink reports saturation and the relay stops forwarding content chunks.
    Terminal events are always enqueued.
    """

    _CLOSE = object()

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._queue: asyncio.Queue = asyncio.Queue()

    def is_saturated(self) -> bool:
        return self._queue.qsize() >= self.max_pending

    async def send(self, event: dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSE)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSE:
                return
            yield item


class StreamSession:
    """Live state of one streaming request.
    
    Holds the accumulated text of the current attempt (used for soft-failure
    detection and later derivations) and guarantees a single terminal event.
    """

    def __init__(self, sink: StreamSink):
        self.sink = sink
        self._parts: list[str] = []
        self.completed = False
        self.closed = False
        self.chunks_forwarded = 0
        self.chunks_dropped = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def append(self, content: str) -> None:
        self._parts.append(content)

    async def forward(self, content: str, provider_label: str) -> bool:
        """Send a content fragment unless the transport is over capacity."""
        if self.closed:
            return False
        if self.sink.is_saturated():
            self.chunks_dropped += 1
            logger.warning(
                f"[StreamSession.forward] Transport saturated, dropped chunk "
                f"({len(content)} chars, {self.chunks_dropped} dropped so far)"
            )
            return False
        await self.sink.send({"content": content, "providerLabel": provider_label})
        self.chunks_forwarded += 1
        return True

    async def discard(self, provider_label: str) -> None:
        """Throw away the current attempt's output before the next provider starts."""
        had_output = bool(self._parts) or self.chunks_forwarded > 0
        self._parts.clear()
        if had_output and not self.closed:
            await self.sink.send({"type": "discard", "providerLabel": provider_label})
        self.chunks_forwarded = 0
        self.chunks_dropped = 0

    async def complete(self, provider_label: str, degraded: bool = False, **extra: Any) -> None:
        if self.closed:
            return
        await self.sink.send({"type": "done", "providerLabel": provider_label, "degraded": degraded, **extra})
        self.completed = True
        self.closed = True

    async def fail(self, code: str, message: str, **extra: Any) -> None:
        if self.closed:
            return
        await self.sink.send({"error": True, "code": code, "message": message, **extra})
        self.closed = True


@dataclass
class RelayOutcome:
    text: str
    failure: ProviderFailure | None = None
    chunks_forwarded: int = 0
    chunks_dropped: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None


class StreamingRelay:
    """Read provider events with a per-read watchdog and forward content."""

    def __init__(self, watchdog_seconds: float = DEFAULT_WATCHDOG_SECONDS):
        self.watchdog_seconds = watchdog_seconds

    async def relay(
        self,
        provider: BaseLLMProvider,
        events: AsyncIterator[ProviderEvent],
        session: StreamSession,
        provider_label: str,
    ) -> RelayOutcome:
        """Pump ``events`` into ``session`` until the upstream finishes or fails.
        
        Args:
            provider: Provider that produced the events, used to map its exceptions
            events: Async generator of raw vendor events
            session: Destination session
            provider_label: Display name attached to every forwarded chunk
            
        Returns:
            RelayOutcome with the accumulated text, or the failure that stopped the loop
        """
        failure: ProviderFailure | None = None

        async with aclosing(events) as reader:
            while True:
                try:
                    event = await asyncio.wait_for(anext(reader), timeout=self.watchdog_seconds)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    failure = ProviderFailure(
                        provider.kind,
                        "stream_timeout",
                        f"No data from {provider_label} for {self.watchdog_seconds:g}s",
                    )
                    logger.warning(f"[StreamingRelay.relay] {failure.message}, closing stream")
                    classified = classify_failure(failure)
                    await session.fail(
                        ErrorCode.STREAM_TIMEOUT.value,
                        classified.user_message,
                        providerLabel=provider_label,
                    )
                    break
                except Exception as e:
                    failure = provider.to_failure(e)
                    logger.error(
                        f"[StreamingRelay.relay] {provider_label} stream failed: "
                        f"{failure.kind} status={failure.status_code}"
                    )
                    break

                try:
                    chunk = normalize_event(event)
                except MalformedEventError as e:
                    failure = provider.to_failure(e)
                    logger.error(f"[StreamingRelay.relay] Unparseable {event.kind} event: {e}")
                    break

                if chunk.content:
                    session.append(chunk.content)
                    await session.forward(chunk.content, provider_label)
                if chunk.is_final:
                    break

        return RelayOutcome(
            text=session.text,
            failure=failure,
            chunks_forwarded=session.chunks_forwarded,
            chunks_dropped=session.chunks_dropped,
        )
