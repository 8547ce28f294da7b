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

"""OpenAI LLM provider."""
import logging
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from airelay.services.llm.normalizers import ProviderEvent
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.results import ProviderFailure

logger = logging.getLogger(__name__)

# Reasoning models only accept the default temperature
_FIXED_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4")


class OpenAIProvider(BaseLLMProvider):
    """OpenAI provider for GPT models."""

    kind = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        super().__init__(api_key, model)
        # Retries are the orchestrator's job (next provider), not the SDK's
        self.client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        logger.debug(f"[OpenAIProvider] Initialized with model: {self.model}")

    def _request_params(self, prompt: str, system_prompt: str | None, temperature: float, max_tokens: int) -> dict[str, Any]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        params: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
        }
        if not self.model.startswith(_FIXED_TEMPERATURE_PREFIXES):
            params["temperature"] = temperature
        return params

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ProviderEvent:
        logger.debug(f"[OpenAIProvider.generate] model: {self.model}, temperature: {temperature}")
        response = await self.client.chat.completions.create(
            **self._request_params(prompt, system_prompt, temperature, max_tokens)
        )
        return ProviderEvent("openai", response.model_dump())

    async def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> AsyncIterator[ProviderEvent]:
        response = await self.client.chat.completions.create(
            stream=True,
            **self._request_params(prompt, system_prompt, temperature, max_tokens),
        )
        try:
            async for chunk in response:
                yield ProviderEvent("openai", chunk.model_dump())
        finally:
            await response.close()

    def _vendor_failure(self, error: Exception) -> ProviderFailure | None:
        if isinstance(error, openai.APITimeoutError):
            return ProviderFailure(self.kind, "timeout", str(error))
        if isinstance(error, openai.APIConnectionError):
            return ProviderFailure(self.kind, "network", str(error))
        if isinstance(error, openai.APIStatusError):
            return ProviderFailure(self.kind, "http", str(error), error.status_code)
        return None
