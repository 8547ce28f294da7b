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

from functools import lru_cache
import json
from typing import Any, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from dotenv import load_dotenv

load_dotenv()


SoftFailurePolicyName = Literal["last_resort", "always_error", "always_accept"]


def parse_cors_origins(v):
    """Parse CORS origins from various formats.
    
    Supports:
    - JSON array: ["https://example.com","http://localhost:3000"]
    - Comma-separated: https://example.com,http://localhost:3000
    - Single value: https://example.com
    - Python list (already parsed): ["https://example.com"]
    """
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return ["http://localhost:3000"]

        try:
            parsed = json.loads(v)
            if isinstance(parsed, list):
                return [str(origin).strip() for origin in parsed if origin]
        except (json.JSONDecodeError, ValueError):
            pass

        origins = []
        for origin in v.strip("[]").split(","):
            origin = origin.strip().strip('"').strip("'")
            if origin:
                if not origin.startswith(("http://", "https://")):
                    origin = f"https://{origin}"
                origins.append(origin)
        return origins or ["http://localhost:3000"]

    return ["http://localhost:3000"]


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    api_name: str = "AI Relay API"
    environment: str = "local"
    database_url: str = ""
    redis_url: str = "redis://localhost:6379/0"
    cors_origins: str = "http://localhost:3000"  # Stored as string to avoid JSON parsing errors
    log_level: str = "INFO"

    # 64 hex chars (32 bytes) shared with the settings service that encrypts provider keys
    encryption_key: str = ""

    # Provider registry cache
    provider_cache_ttl_seconds: float = 60.0
    provider_cache_max_entries: int = 100

    # Provider calls and streaming
    provider_call_timeout_seconds: float = 60.0
    stream_watchdog_seconds: float = 45.0
    stream_max_pending_events: int = 256
    default_max_tokens: int = 2048
    default_temperature: float = 0.7
    openai_default_model: str = "gpt-4o-mini"
    anthropic_default_model: str = "claude-sonnet-4-5-20250929"
    google_default_model: str = "gemini-2.5-flash"

    # Accept a soft failure from the final candidate as a degraded answer
    soft_failure_policy: SoftFailurePolicyName = "last_resort"

    # Admission control
    enable_rate_limiting: bool = True
    enforce_monthly_quota: bool = True
    default_plan: str = "free"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="AIRELAY_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_encryption_key(self) -> "Settings":
        """Warn about a missing provider key secret, fail fast in production."""
        import warnings

        if not self.encryption_key:
            if self.environment == "production":
                raise ValueError(
                    "❌ CRITICAL: AIRELAY_ENCRYPTION_KEY is not set. "
                    "Stored provider API keys cannot be decrypted without it."
                )
            warnings.warn(
                "⚠️  WARNING: AIRELAY_ENCRYPTION_KEY is not set. "
                "Every provider attempt will fail with KEY_DECRYPT_FAILED until it is configured.",
                UserWarning
            )
        return self

    @model_validator(mode="after")
    def validate_redis_url(self) -> "Settings":
        """Warn when rate-limit counters would be process-local."""
        import warnings

        if not self.redis_url:
            warnings.warn(
                "⚠️  WARNING: AIRELAY_REDIS_URL is not set. "
                "Rate-limit and usage counters fall back to in-memory storage "
                "and are not shared between workers.",
                UserWarning
            )
        elif self.environment == "production" and "localhost" in self.redis_url:
            warnings.warn(
                "⚠️  WARNING: AIRELAY_REDIS_URL uses localhost in production.",
                UserWarning
            )
        return self

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """Reject non-positive timeouts and cache bounds."""
        if self.stream_watchdog_seconds <= 0 or self.provider_call_timeout_seconds <= 0:
            raise ValueError("Provider timeouts must be positive")
        if self.provider_cache_ttl_seconds <= 0 or self.provider_cache_max_entries <= 0:
            raise ValueError("Provider cache TTL and size must be positive")
        return self

    @model_validator(mode="before")
    @classmethod
    def fix_cors_origins_format(cls, data: Any) -> Any:
        """Ensure cors_origins is always a string (not parsed as JSON by pydantic_settings)."""
        if isinstance(data, dict) and isinstance(data.get("cors_origins"), list):
            data["cors_origins"] = ",".join(str(v) for v in data["cors_origins"])
        return data

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list. Parses the string value on access."""
        return parse_cors_origins(self.cors_origins)

    def default_model_for(self, provider_type: str) -> str:
        return {
            "openai": self.openai_default_model,
            "anthropic": self.anthropic_default_model,
            "google": self.google_default_model,
        }.get(provider_type, "")


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
