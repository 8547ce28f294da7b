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

"""Redis client factory."""
import logging
from typing import Optional

from redis import Redis as StandardRedis

from airelay.core.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: Optional[StandardRedis] = None


def get_redis_client() -> StandardRedis | None:
    """
    Get the shared Redis client used for rate-limit and usage counters.
    
    Returns:
        Connected Redis client, or None if Redis is unavailable (allows graceful degradation).
    """
    global _redis_client
    
    if _redis_client is not None:
        return _redis_client
    
    settings = get_settings()
    if not settings.redis_url:
        return None

    try:
        logger.info("[redis] Initializing Redis client")
        client = StandardRedis.from_url(settings.redis_url, decode_responses=True)
        ping_result = client.ping()
        logger.info(f"[redis] ✅ Redis connection successful! Ping result: {ping_result}")
        _redis_client = client
        return _redis_client
    except Exception as e:
        logger.error(f"[redis] ❌ Failed to initialize Redis client: {e}")
        logger.warning("[redis] Counters will use in-memory fallback")
        return None


def reset_redis_client() -> None:
    """Reset the Redis client (useful for testing)."""
    global _redis_client
    _redis_client = None
