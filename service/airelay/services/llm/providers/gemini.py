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

"""Google Gemini LLM provider."""
import logging
from typing import AsyncIterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from airelay.services.llm.normalizers import ProviderEvent
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.results import ProviderFailure

logger = logging.getLogger(__name__)


class GeminiProvider(BaseLLMProvider):
    """Google Gemini provider."""

    kind = "google"
    default_model = "gemini-2.5-flash"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        super().__init__(api_key, model)
        # Stored model ids sometimes carry an aggregator prefix ("google/gemini-2.5-pro")
        if "/" in self.model:
            self.model = self.model.split("/", 1)[1]
        self.client = genai.Client(api_key=self.api_key)
        logger.debug(f"[GeminiProvider] Initialized with model: {self.model}")

    def _config(self, system_prompt: str | None, temperature: float, max_tokens: int) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            system_instruction=system_prompt or None,
        )

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ProviderEvent:
        logger.debug(f"[GeminiProvider.generate] model: {self.model}")
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=self._config(system_prompt, temperature, max_tokens),
        )
        return ProviderEvent("google", response.model_dump())

    async def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> AsyncIterator[ProviderEvent]:
        response = await self.client.aio.models.generate_content_stream(
            model=self.model,
            contents=prompt,
            config=self._config(system_prompt, temperature, max_tokens),
        )
        try:
            async for chunk in response:
                yield ProviderEvent("google", chunk.model_dump())
        finally:
            await response.aclose()

    def _vendor_failure(self, error: Exception) -> ProviderFailure | None:
        if isinstance(error, genai_errors.APIError):
            return ProviderFailure(self.kind, "http", f"{error.status or ''} {error.message or error}".strip(), error.code)
        return None
