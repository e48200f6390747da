"""Tests for AnalyticsCache.

Covers:
- key canonicalisation of parameter dicts
- TTL expiry with an injected clock
- last-write-wins by timestamp
- get_or_compute reuse and coalescing of concurrent computations
- invalidation per entity, single-key discard, purge, sizes of the cache family
"""

from __future__ import annotations

import asyncio

import pytest

from vpp_analytics.cache.analytics_cache import AnalyticsCache, AnalyticsCaches


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> AnalyticsCache:
    return AnalyticsCache("test", ttl_seconds=300.0, clock=clock)


class TestKeys:
    """Tests for AnalyticsCache.key."""

    def test_parameter_order_irrelevant(self):
        a = AnalyticsCache.key("vpp-1", "mean_variance", {"x": 1, "y": [1, 2]})
        b = AnalyticsCache.key("vpp-1", "mean_variance", {"y": [1, 2], "x": 1})
        assert a == b

    def test_parameters_distinguish(self):
        a = AnalyticsCache.key("vpp-1", "mean_variance", {"x": 1})
        b = AnalyticsCache.key("vpp-1", "mean_variance", {"x": 2})
        assert a != b
        assert AnalyticsCache.key("vpp-1", "t") == AnalyticsCache.key("vpp-1", "t", {})


class TestExpiryAndOrdering:
    """TTL and timestamp ordering."""

    def test_expiry(self, cache, clock):
        key = cache.key("vpp-1", "risk")
        cache.set(key, "report")
        clock.now += 299.0
        assert cache.get(key) == "report"
        clock.now += 2.0
        assert cache.get(key) is None
        assert len(cache) == 0

    def test_stale_write_dropped(self, cache):
        key = cache.key("vpp-1", "risk")
        assert cache.set(key, "new", timestamp=1000.0)
        assert not cache.set(key, "old", timestamp=900.0)
        assert cache.get(key) == "new"
        assert cache.get_entry(key).timestamp == 1000.0

    def test_purge_expired(self, cache, clock):
        cache.set(cache.key("a", "risk"), 1, timestamp=clock.now - 400)
        cache.set(cache.key("b", "risk"), 2)
        assert cache.purge_expired() == 1
        assert len(cache) == 1


class TestGetOrCompute:
    """Tests for AnalyticsCache.get_or_compute."""

    @pytest.mark.asyncio
    async def test_reuses_value(self, cache):
        calls = {"n": 0}

        async def factory():
            calls["n"] += 1
            return {"weights": [0.5, 0.5]}

        key = cache.key("vpp-1", "mean_variance")
        first = await cache.get_or_compute(key, factory)
        second = await cache.get_or_compute(key, factory)
        assert first is second
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_coalesce(self, cache):
        calls = {"n": 0}

        async def factory():
            calls["n"] += 1
            await asyncio.sleep(0.01)
            return "result"

        key = cache.key("vpp-1", "stress_test")
        results = await asyncio.gather(*(cache.get_or_compute(key, factory) for _ in range(5)))
        assert results == ["result"] * 5
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_failure_not_cached(self, cache):
        key = cache.key("vpp-1", "risk")

        async def failing():
            raise RuntimeError("upstream")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute(key, failing)

        async def working():
            return "ok"

        assert await cache.get_or_compute(key, working) == "ok"


class TestInvalidation:
    """Tests for invalidate and the cache family."""

    def test_invalidate_entity(self, cache):
        cache.set(cache.key("vpp-1", "a"), 1)
        cache.set(cache.key("vpp-1", "b"), 2)
        cache.set(cache.key("vpp-2", "a"), 3)
        assert cache.invalidate("vpp-1") == 2
        assert len(cache) == 1
        assert cache.invalidate() == 1

    def test_discard_single_key(self, cache):
        kept = cache.key("vpp-1", "sensitivity", {"seed": 1})
        dropped = cache.key("vpp-1", "sensitivity", {"seed": 2})
        cache.set(kept, "full")
        cache.set(dropped, "partial")
        assert cache.discard(dropped) is True
        assert cache.discard(dropped) is False
        assert cache.get(kept) == "full"
        assert cache.get(dropped) is None
        assert len(cache) == 1

    def test_family_sizes_and_clear(self, clock):
        caches = AnalyticsCaches.create(60.0, clock)
        caches.risk.set(caches.risk.key("vpp-1", "risk"), 1)
        caches.stress.set(caches.stress.key("vpp-1", "stress"), 2)
        assert caches.sizes() == {"risk": 1, "optimization": 0, "sensitivity": 0, "stress_test": 1}
        caches.clear()
        assert sum(caches.sizes().values()) == 0
