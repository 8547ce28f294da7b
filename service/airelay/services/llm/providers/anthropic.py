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

"""Anthropic Claude LLM provider."""
import logging
import re
from typing import Any, AsyncIterator

import anthropic
from anthropic import AsyncAnthropic

from airelay.services.llm.normalizers import ProviderEvent
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.results import ProviderFailure

logger = logging.getLogger(__name__)


def normalize_anthropic_model_name(model: str) -> str:
    """Convert dotted version numbers to Anthropic's hyphenated form.
    
    e.g. "claude-sonnet-4.5" -> "claude-sonnet-4-5". Already native names are
    returned unchanged.
    """
    return re.sub(r'(\d+)\.(\d+)', r'\1-\2', model)


class AnthropicProvider(BaseLLMProvider):
    """Anthropic provider for Claude models."""

    kind = "anthropic"
    default_model = "claude-sonnet-4-5-20250929"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        super().__init__(api_key, model)
        self.model = normalize_anthropic_model_name(self.model)
        self.client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        logger.debug(f"[AnthropicProvider] Initialized with model: {self.model}")

    def _request_params(self, prompt: str, system_prompt: str | None, temperature: float, max_tokens: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            # Clamp temperature to Anthropic's range (0.0 to 1.0)
            "temperature": max(0.0, min(1.0, temperature)),
        }
        if system_prompt:
            params["system"] = system_prompt
        return params

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ProviderEvent:
        logger.debug(f"[AnthropicProvider.generate] model: {self.model}")
        message = await self.client.messages.create(
            **self._request_params(prompt, system_prompt, temperature, max_tokens)
        )
        return ProviderEvent("anthropic", message.model_dump())

    async def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> AsyncIterator[ProviderEvent]:
        response = await self.client.messages.create(
            stream=True,
            **self._request_params(prompt, system_prompt, temperature, max_tokens),
        )
        try:
            async for event in response:
                yield ProviderEvent("anthropic", event.model_dump())
        finally:
            await response.close()

    def _vendor_failure(self, error: Exception) -> ProviderFailure | None:
        if isinstance(error, anthropic.APITimeoutError):
            return ProviderFailure(self.kind, "timeout", str(error))
        if isinstance(error, anthropic.APIConnectionError):
            return ProviderFailure(self.kind, "network", str(error))
        if isinstance(error, anthropic.APIStatusError):
            return ProviderFailure(self.kind, "http", str(error), error.status_code)
        return None
