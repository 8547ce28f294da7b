"""Tests for plan-aware rate limiting and monthly usage counting."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import fakeredis
import pytest

from airelay.core.plans import PLAN_QUOTAS, get_plan_quotas, has_unlimited_ai, normalize_plan
from airelay.core.rate_limiter import (
    InMemoryCounterStore,
    RateLimitBucket,
    RateLimiter,
    RedisCounterStore,
    buckets_for_plan,
    get_counter_store,
)
from airelay.core.usage import UsageCounter

# 16667 * 60, so windows of 60s start here
WINDOW_START = 1_000_020.0


@pytest.fixture
def limiter(clock):
    clock.now = WINDOW_START + 15
    return RateLimiter(store=InMemoryCounterStore(clock), clock=clock)


def per_minute(limit: int) -> RateLimitBucket:
    return RateLimitBucket("test_per_minute", "test", 60, limit, "test requests per minute")


class TestCheckRateLimits:

    def test_allows_up_to_limit(self, limiter):
        for _ in range(3):
            assert limiter.check_rate_limits("user-1", "org-1", [per_minute(3)]).allowed

    def test_rejects_past_limit_with_retry_after(self, limiter):
        for _ in range(3):
            limiter.check_rate_limits("user-1", "org-1", [per_minute(3)])
        result = limiter.check_rate_limits("user-1", "org-1", [per_minute(3)])

        assert not result.allowed
        assert result.exceeded_bucket.name == "test_per_minute"
        assert result.limit == 3
        assert result.remaining == 0
        assert result.retry_after == 45
        assert result.reset_at == WINDOW_START + 60
        assert result.message == "You've reached the limit of 3 test requests per minute. Please try again later."

    def test_window_resets(self, limiter, clock):
        for _ in range(4):
            limiter.check_rate_limits("user-1", "org-1", [per_minute(3)])
        clock.advance(45)
        assert limiter.check_rate_limits("user-1", "org-1", [per_minute(3)]).allowed

    def test_users_are_counted_separately(self, limiter):
        for _ in range(3):
            limiter.check_rate_limits("user-1", "org-1", [per_minute(3)])
        assert limiter.check_rate_limits("user-2", "org-1", [per_minute(3)]).allowed

    def test_reports_first_exceeded_bucket_but_increments_all(self, limiter):
        tight = RateLimitBucket("tight", "tight", 60, 1, "tight requests")
        loose = RateLimitBucket("loose", "loose", 3600, 10, "loose requests")
        limiter.check_rate_limits("user-1", "org-1", [tight, loose])
        result = limiter.check_rate_limits("user-1", "org-1", [tight, loose])

        assert result.exceeded_bucket.name == "tight"
        loose_key = limiter._key(loose, "org-1:user-1", int(limiter._clock() // 3600))
        assert limiter.store.get(loose_key) == 2

    def test_org_wide_bucket_spans_users(self, limiter):
        org_bucket = RateLimitBucket("org_daily", "org_daily", 86400, 2, "org requests per day", scope="org")
        assert limiter.check_rate_limits("user-1", "org-1", [], [org_bucket]).allowed
        assert limiter.check_rate_limits("user-2", "org-1", [], [org_bucket]).allowed
        result = limiter.check_rate_limits("user-3", "org-1", [], [org_bucket])
        assert not result.allowed
        assert result.exceeded_bucket.scope == "org"

    def test_disabled_rate_limiting_always_allows(self, limiter, monkeypatch):
        from airelay.core.config import get_settings

        monkeypatch.setenv("AIRELAY_ENABLE_RATE_LIMITING", "false")
        get_settings.cache_clear()
        for _ in range(10):
            assert limiter.check_rate_limits("user-1", "org-1", [per_minute(1)]).allowed

    def test_store_errors_fail_open(self, clock):
        store = MagicMock()
        store.increment.side_effect = ConnectionError("redis down")
        limiter = RateLimiter(store=store, clock=clock)
        assert limiter.check_rate_limits("user-1", "org-1", [per_minute(0)]).allowed


class TestPlanBuckets:

    def test_generic_group_uses_plan_quotas(self):
        bucket_set = buckets_for_plan("growth")
        assert [b.limit for b in bucket_set.buckets] == [25, 200, 1000]
        assert bucket_set.org_wide_buckets == ()

    def test_insights_group(self):
        bucket_set = buckets_for_plan("startup", "ai_insights")
        assert [b.name for b in bucket_set.buckets] == ["ai_insights_per_hour", "ai_insights_per_day"]

    def test_plan_my_day_adds_org_bucket(self):
        bucket_set = buckets_for_plan("free", "plan_my_day")
        assert bucket_set.buckets[0].limit == 2
        assert len(bucket_set.buckets) == 4
        assert bucket_set.org_wide_buckets[0].limit == 3

    def test_check_plan_limits_for_free_plan(self, limiter):
        for _ in range(5):
            assert limiter.check_plan_limits("user-1", "org-1", "free").allowed
        result = limiter.check_plan_limits("user-1", "org-1", "free")
        assert not result.allowed
        assert result.exceeded_bucket.name == "ai_generic_per_minute"

    def test_unknown_plan_resolves_to_free(self):
        assert normalize_plan("enterprise-gold") == "free"
        assert get_plan_quotas(None) == PLAN_QUOTAS["free"]
        assert has_unlimited_ai("pro")
        assert not has_unlimited_ai("growth")


class TestCounterStores:

    def test_redis_store_increments_with_expiry(self):
        redis = fakeredis.FakeRedis(decode_responses=True)
        store = RedisCounterStore(redis)
        assert store.increment("ratelimit:test", 60) == 1
        assert store.increment("ratelimit:test", 60) == 2
        assert store.get("ratelimit:test") == 2
        assert 0 < redis.ttl("ratelimit:test") <= 60
        assert store.get("missing") == 0

    def test_in_memory_store_expires(self, clock):
        store = InMemoryCounterStore(clock)
        store.increment("k", 10)
        clock.advance(10)
        assert store.get("k") == 0
        assert store.increment("k", 10) == 1

    def test_in_memory_store_releases_closed_windows(self, clock):
        store = InMemoryCounterStore(clock)
        limiter = RateLimiter(store=store, clock=clock)
        buckets = buckets_for_plan("pro").buckets

        for _ in range(1000):
            assert limiter.check_rate_limits("user-1", "org-1", buckets).allowed
            clock.advance(61)

        # At most the current and previous window per bucket survive a sweep
        assert len(store) <= 2 * len(buckets)

    def test_in_memory_store_sweeps_at_most_once_per_interval(self, clock):
        store = InMemoryCounterStore(clock, sweep_interval=60)
        store.increment("a", 1)
        clock.advance(5)
        store.increment("b", 1)
        assert len(store) == 2

        clock.advance(60)
        store.increment("c", 1)
        assert len(store) == 1
        assert store.get("c") == 1

    def test_falls_back_to_memory_without_redis(self):
        assert isinstance(get_counter_store(), InMemoryCounterStore)

    def test_uses_redis_when_available(self, monkeypatch):
        redis = fakeredis.FakeRedis(decode_responses=True)
        monkeypatch.setattr("airelay.core.rate_limiter.get_redis_client", lambda: redis)
        assert isinstance(get_counter_store(), RedisCounterStore)


class TestUsageCounter:

    def test_counts_per_calendar_month(self, clock):
        clock.now = datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc).timestamp()
        counter = UsageCounter(store=InMemoryCounterStore(clock), clock=clock)
        counter.increment_usage("org-1")
        counter.increment_usage("org-1")
        assert counter.get_usage("org-1") == 2

        clock.advance(120)
        assert counter.get_usage("org-1") == 0

    def test_tenants_are_separate(self):
        counter = UsageCounter(store=RedisCounterStore(fakeredis.FakeRedis(decode_responses=True)))
        counter.increment_usage("org-1")
        assert counter.get_usage("org-1") == 1
        assert counter.get_usage("org-2") == 0
