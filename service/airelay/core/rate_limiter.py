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

"""Plan-aware fixed-window admission control for AI requests.

Every applicable bucket is incremented on each check; the first bucket whose
count exceeds its limit is reported so the caller can build a ``Retry-After``.
Counters live in Redis when available and in process memory otherwise.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Literal, Protocol, Sequence

from airelay.core.config import get_settings
from airelay.core.plans import get_plan_quotas, normalize_plan
from airelay.core.redis import get_redis_client

logger = logging.getLogger(__name__)

BucketScope = Literal["user", "org"]
RateLimitGroup = Literal["ai_generic", "ai_insights", "plan_my_day"]


@dataclass(frozen=True)
class RateLimitBucket:
    """A named fixed-window counter definition."""
    name: str
    key_prefix: str
    window_seconds: int
    limit: int
    description: str
    scope: BucketScope = "user"


@dataclass(frozen=True)
class BucketSet:
    buckets: tuple[RateLimitBucket, ...]
    org_wide_buckets: tuple[RateLimitBucket, ...] = ()


@dataclass
class RateLimitResult:
    """Outcome of an admission check."""
    allowed: bool
    exceeded_bucket: RateLimitBucket | None = None
    limit: int | None = None
    remaining: int | None = None
    window_seconds: int | None = None
    retry_after: int | None = None
    reset_at: float | None = None

    @property
    def message(self) -> str:
        if self.allowed or self.exceeded_bucket is None:
            return ""
        return (
            f"You've reached the limit of {self.exceeded_bucket.limit} "
            f"{self.exceeded_bucket.description}. Please try again later."
        )


class CounterStore(Protocol):
    def increment(self, key: str, ttl_seconds: int) -> int: ...

    def get(self, key: str) -> int: ...


class InMemoryCounterStore:
    """Process-local counters with expiry, used when Redis is unavailable.
    
    Window keys are never reused once their window closes, so expired entries
    are swept out at most once per ``sweep_interval`` seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._clock = clock
        self._counts: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = 0.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counts.items() if expires_at <= now]
        for key in expired:
            del self._counts[key]
        self._next_sweep = now + self.sweep_interval
        if expired:
            logger.debug(f"[InMemoryCounterStore._sweep] Released {len(expired)} expired counters")

    def increment(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            count, expires_at = self._counts.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counts[key] = (count, expires_at)
            return count

    def get(self, key: str) -> int:
        with self._lock:
            count, expires_at = self._counts.get(key, (0, 0.0))
            return count if expires_at > self._clock() else 0

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


class RedisCounterStore:
    """Atomic INCR + EXPIRE counters in Redis."""

    def __init__(self, redis):
        self.redis = redis

    def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, ttl_seconds)
        count, _ = pipe.execute()
        return int(count)

    def get(self, key: str) -> int:
        value = self.redis.get(key)
        return int(value) if value else 0


_fallback_store = InMemoryCounterStore()


def get_counter_store() -> CounterStore:
    """Redis-backed store when Redis is reachable, otherwise the in-memory store."""
    redis = get_redis_client()
    if redis is None:
        return _fallback_store
    return RedisCounterStore(redis)


def buckets_for_plan(plan: str | None, group: RateLimitGroup = "ai_generic") -> BucketSet:
    """Build the active bucket definitions for a plan.
    
    Args:
        plan: Subscription plan id (unknown plans use free limits)
        group: Which feature's limits apply
        
    Returns:
        User-scoped buckets and org-wide buckets for the group
    """
    quotas = get_plan_quotas(plan)
    generic = (
        RateLimitBucket("ai_generic_per_minute", "ai.generic", 60, quotas.ai_generic_per_minute,
                        "AI requests per minute"),
        RateLimitBucket("ai_generic_per_hour", "ai.generic", 3600, quotas.ai_generic_per_hour,
                        "AI requests per hour"),
        RateLimitBucket("ai_generic_per_day", "ai.generic", 86400, quotas.ai_generic_per_day,
                        "AI requests per day"),
    )
    if group == "ai_insights":
        return BucketSet(buckets=(
            RateLimitBucket("ai_insights_per_hour", "ai.insights", 3600, quotas.ai_insights_per_hour,
                            "AI insight requests per hour"),
            RateLimitBucket("ai_insights_per_day", "ai.insights", 86400, quotas.ai_insights_per_day,
                            "AI insight requests per day"),
        ))
    if group == "plan_my_day":
        return BucketSet(
            buckets=(
                RateLimitBucket("plan_my_day_per_user_per_day", "ai.plan_my_day", 86400,
                                quotas.plan_my_day_per_user_per_day, "Plan My Day requests per day"),
            ) + generic,
            org_wide_buckets=(
                RateLimitBucket("plan_my_day_per_org_per_day", "ai.plan_my_day_org", 86400,
                                quotas.plan_my_day_per_org_per_day,
                                "Plan My Day requests per day for your organization", scope="org"),
            ),
        )
    return BucketSet(buckets=generic)


class RateLimiter:
    """Evaluate plan-aware rate-limit buckets for a user and organization."""

    def __init__(self, store: CounterStore | None = None, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store if self._store is not None else get_counter_store()

    def _key(self, bucket: RateLimitBucket, scope_id: str, window_index: int) -> str:
        return f"ratelimit:{bucket.key_prefix}:{bucket.window_seconds}:{scope_id}:{window_index}"

    def check_rate_limits(
        self,
        user_id: str,
        org_id: str,
        buckets: Sequence[RateLimitBucket],
        org_wide_buckets: Sequence[RateLimitBucket] = (),
    ) -> RateLimitResult:
        """
        Increment and evaluate every applicable bucket.
        
        Args:
            user_id: Requesting user
            org_id: Requesting organization
            buckets: Buckets scoped to (user, organization)
            org_wide_buckets: Buckets scoped to the organization alone
            
        Returns:
            RateLimitResult describing the first exceeded bucket, or allowed
        """
        if not get_settings().enable_rate_limiting:
            return RateLimitResult(allowed=True)

        store = self.store
        now = self._clock()
        first_exceeded: RateLimitResult | None = None

        scoped = [(bucket, f"{org_id}:{user_id}") for bucket in buckets]
        scoped += [(bucket, f"{org_id}") for bucket in org_wide_buckets]

        for bucket, scope_id in scoped:
            window_index = int(now // bucket.window_seconds)
            reset_at = (window_index + 1) * bucket.window_seconds
            try:
                count = store.increment(self._key(bucket, scope_id, window_index), bucket.window_seconds)
            except Exception as e:
                # Fail open - counting store problems must not block AI requests
                logger.error(f"[RateLimiter.check_rate_limits] Counter error for {bucket.name}: {e}")
                continue

            if count > bucket.limit and first_exceeded is None:
                first_exceeded = RateLimitResult(
                    allowed=False,
                    exceeded_bucket=bucket,
                    limit=bucket.limit,
                    remaining=0,
                    window_seconds=bucket.window_seconds,
                    retry_after=max(1, math.ceil(reset_at - now)),
                    reset_at=reset_at,
                )

        if first_exceeded is not None:
            logger.warning(
                f"[RateLimiter.check_rate_limits] Rate limit exceeded: bucket={first_exceeded.exceeded_bucket.name}, "
                f"org={org_id}, user={user_id}, retry_after={first_exceeded.retry_after}s"
            )
            return first_exceeded
        return RateLimitResult(allowed=True)

    def check_plan_limits(self, user_id: str, org_id: str, plan: str | None,
                          group: RateLimitGroup = "ai_generic") -> RateLimitResult:
        """Resolve the plan's bucket set and check it."""
        bucket_set = buckets_for_plan(normalize_plan(plan), group)
        return self.check_rate_limits(user_id, org_id, bucket_set.buckets, bucket_set.org_wide_buckets)
