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

import logging
from fastapi import APIRouter, Depends

from airelay.api.deps import get_relay_engine
from airelay.core.redis import get_redis_client
from airelay.services.llm.engine import AIRelayEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", summary="Liveness probe")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/redis", summary="Redis connectivity check")
async def redis_health_check() -> dict[str, str | bool]:
    """Check Redis connectivity used by the rate-limit and usage counters."""
    try:
        redis = get_redis_client()
        if redis is None:
            return {"status": "unavailable", "connected": False, "fallback": "in-memory"}
        redis.ping()
        return {"status": "ok", "connected": True}
    except Exception as e:
        logger.warning(f"[redis_health_check] Ping failed: {e}")
        return {"status": "error", "connected": False, "error": str(e)}


@router.get("/health/providers-cache", summary="Provider registry cache statistics")
async def providers_cache_health(engine: AIRelayEngine = Depends(get_relay_engine)) -> dict:
    return {"status": "ok", "cache": engine.registry.stats()}
