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

"""Monthly AI usage counter per organization."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from airelay.core.rate_limiter import CounterStore, get_counter_store

logger = logging.getLogger(__name__)

# Long enough to outlive the calendar month the key belongs to
USAGE_KEY_TTL_SECONDS = 40 * 24 * 60 * 60


class UsageCounter:
    """Count successfully served AI requests per tenant and calendar month (UTC)."""

    def __init__(self, store: CounterStore | None = None, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store if self._store is not None else get_counter_store()

    def _key(self, tenant_id: str) -> str:
        month = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m")
        return f"ai_usage:{tenant_id}:{month}"

    def increment_usage(self, tenant_id: str) -> int:
        count = self.store.increment(self._key(tenant_id), USAGE_KEY_TTL_SECONDS)
        logger.debug(f"[UsageCounter.increment_usage] tenant={tenant_id} count={count}")
        return count

    def get_usage(self, tenant_id: str) -> int:
        return self.store.get(self._key(tenant_id))
