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

"""LLM provider implementations."""
from airelay.services.llm.providers.base import BaseLLMProvider
from airelay.services.llm.providers.openai import OpenAIProvider
from airelay.services.llm.providers.anthropic import AnthropicProvider
from airelay.services.llm.providers.gemini import GeminiProvider

PROVIDER_CLASSES: dict[str, type[BaseLLMProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GeminiProvider,
}


def create_provider(provider_type: str, api_key: str, model: str | None = None) -> BaseLLMProvider:
    """Instantiate the provider for a configured provider type.
    
    Raises:
        ValueError: If the provider type is not supported
    """
    provider_class = PROVIDER_CLASSES.get(provider_type)
    if provider_class is None:
        raise ValueError(f"Unsupported provider type: {provider_type}")
    return provider_class(api_key=api_key, model=model)


__all__ = [
    "BaseLLMProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "PROVIDER_CLASSES",
    "create_provider",
]
