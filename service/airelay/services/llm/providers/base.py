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

"""Base LLM provider interface."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

from airelay.services.llm.classifier import failure_from_exception
from airelay.services.llm.normalizers import MalformedEventError, ProviderEvent, normalize_event
from airelay.services.llm.results import CallResult, ProviderFailure, ProviderKind

logger = logging.getLogger(__name__)


class BaseLLMProvider(ABC):
    """Base class for all LLM providers.
    
    Subclasses talk to one vendor SDK. ``generate`` and ``stream`` may raise
    vendor exceptions; ``complete`` and the streaming relay turn those into a
    ``ProviderFailure`` through ``to_failure`` so nothing above this layer
    inspects vendor exception types.
    """

    kind: ProviderKind
    default_model: str = ""

    def __init__(self, api_key: str | None = None, model: str | None = None):
        """Initialize provider with API key.
        
        Args:
            api_key: Decrypted API key for this provider.
            model: Model to call; falls back to the provider default.
            
        Raises:
            ValueError: If api_key is None or empty
        """
        if not api_key:
            raise ValueError(
                f"API key required for {self.__class__.__name__}. "
                f"Please configure your API key in Settings → AI Providers."
            )
        self.api_key = api_key
        self.model = model or self.default_model

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ProviderEvent:
        """Request a complete response.
        
        Returns:
            The vendor's full response payload tagged with this provider's kind
        """

    @abstractmethod
    def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> AsyncIterator[ProviderEvent]:
        """Open a streaming response and yield raw vendor events.
        
        Implementations are async generators that release the upstream
        connection in a ``finally`` block.
        """

    def _vendor_failure(self, error: Exception) -> ProviderFailure | None:
        """Map vendor SDK exceptions; return None to use the generic mapping."""
        return None

    def to_failure(self, error: Exception) -> ProviderFailure:
        """Convert any exception raised by this provider into a ProviderFailure."""
        if isinstance(error, MalformedEventError):
            return ProviderFailure(self.kind, "unknown", str(error))
        failure = self._vendor_failure(error)
        if failure is None:
            failure = failure_from_exception(error, provider=self.kind)
        return failure

    async def complete(
        self,
        prompt: str,
        *,
        timeout: float,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> CallResult:
        """Non-streaming call wrapped with a deadline.
        
        Returns:
            CallResult holding either the normalized text or the failure
        """
        try:
            event = await asyncio.wait_for(
                self.generate(
                    prompt,
                    system_prompt=system_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=timeout,
            )
            chunk = normalize_event(event)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.__class__.__name__}.complete] Timed out after {timeout}s")
            return CallResult.error(ProviderFailure(self.kind, "timeout", f"Request timed out after {timeout}s"))
        except Exception as e:
            failure = self.to_failure(e)
            logger.error(f"[{self.__class__.__name__}.complete] FAILED: {failure.kind} status={failure.status_code}")
            return CallResult.error(failure)
        return CallResult.success(chunk.content)
