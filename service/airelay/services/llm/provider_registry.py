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

"""Load the AI providers a tenant has connected, through the TTL cache."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from airelay.services.llm.provider_cache import ProviderCache

logger = logging.getLogger(__name__)

ALLOWED_PROVIDERS = ("openai", "anthropic", "google")

PROVIDER_DISPLAY_NAMES = {
    "openai": "ChatGPT",
    "anthropic": "Claude",
    "google": "Gemini",
}


def get_provider_display_name(provider_type: str) -> str:
    return PROVIDER_DISPLAY_NAMES.get(provider_type, provider_type)


@dataclass(frozen=True)
class ProviderConfig:
    """One configured AI backend for a tenant. Read-only to this service."""
    id: str
    provider_type: str
    model: str
    api_key_encrypted: str
    created_at: datetime

    @property
    def display_name(self) -> str:
        return get_provider_display_name(self.provider_type)


class RegistryFetchError(Exception):
    """The provider store could not be reached. Distinct from having zero providers."""

    code = "PROVIDER_FETCH_ERROR"

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class ProviderStore(Protocol):
    async def fetch_providers(self, tenant_id: str) -> Sequence[ProviderConfig]: ...


@dataclass
class ConnectedProviders:
    providers: tuple[ProviderConfig, ...] = ()
    fetch_error: bool = False
    error_message: str | None = None


def filter_connected(rows: Sequence[ProviderConfig]) -> tuple[ProviderConfig, ...]:
    """Keep supported provider types with a stored key, oldest first."""
    usable = [
        row for row in rows
        if row.provider_type in ALLOWED_PROVIDERS and (row.api_key_encrypted or "").strip()
    ]
    return tuple(sorted(usable, key=lambda row: row.created_at))


class ProviderRegistry:
    """Per-tenant provider lookup with a bounded TTL cache."""

    def __init__(self, store: ProviderStore, cache: ProviderCache[tuple[ProviderConfig, ...]] | None = None):
        self.store = store
        self.cache = cache if cache is not None else ProviderCache()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def get_providers(self, tenant_id: str) -> tuple[ProviderConfig, ...]:
        """Return the tenant's connected providers.
        
        Args:
            tenant_id: Organization id
            
        Returns:
            Snapshot tuple, possibly empty. Repeated calls within the TTL return
            the same object.
            
        Raises:
            RegistryFetchError: If the backing store is unreachable
        """
        cached = self.cache.get(tenant_id)
        if cached is not None:
            return cached

        async with self._lock_for(tenant_id):
            # Another caller may have refreshed while we waited
            cached = self.cache.get(tenant_id)
            if cached is not None:
                return cached

            try:
                rows = await self.store.fetch_providers(tenant_id)
            except Exception as e:
                logger.error(f"[ProviderRegistry.get_providers] Fetch failed for tenant {tenant_id}: {e}")
                raise RegistryFetchError(f"Failed to fetch providers: {e}", tenant_id) from e

            snapshot = filter_connected(rows)
            self.cache.set(tenant_id, snapshot)
            logger.debug(f"[ProviderRegistry.get_providers] Cached {len(snapshot)} providers for tenant {tenant_id}")

        if len(self._locks) > self.cache.max_entries:
            # Drop locks for tenants that fell out of the cache
            for key in [key for key, lock in self._locks.items() if key not in self.cache and not lock.locked()]:
                self._locks.pop(key, None)
        return snapshot

    async def get_connected_providers(self, tenant_id: str) -> ConnectedProviders:
        """Non-raising variant for display surfaces."""
        try:
            return ConnectedProviders(providers=await self.get_providers(tenant_id))
        except RegistryFetchError as e:
            return ConnectedProviders(fetch_error=True, error_message=str(e))

    def invalidate(self, tenant_id: str) -> None:
        """Drop a tenant's snapshot, e.g. after its provider settings change."""
        self.cache.invalidate(tenant_id)

    def clear(self) -> None:
        self.cache.clear()

    def stats(self) -> dict:
        return self.cache.stats()
