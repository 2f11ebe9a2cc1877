"""
Unit tests for cache_coordinator.py -- TTL cache with single-flight compute.
"""

import asyncio

import pytest

from cache_coordinator import MISS, CacheCoordinator


class TestTTL:
    def test_fresh_then_expired(self, cache, clock):
        cache.set("k", 1, ttl=10)
        clock.advance(9)
        assert cache.get("k") == 1
        clock.advance(1)
        assert cache.get("k") is MISS
        assert "k" not in cache.keys()

    def test_zero_ttl_is_immediately_expired(self, cache):
        cache.set("k", 1, ttl=0)
        assert cache.get("k") is MISS

    def test_default_ttl(self, cache, clock):
        cache.set("k", "v")
        clock.advance(10)
        assert not cache.has("k")

    def test_invalidate(self, cache):
        cache.set("k", 1)
        assert cache.invalidate("k")
        assert not cache.invalidate("k")
        assert cache.get("k") is MISS

    def test_peek_ignores_expiry(self, cache, clock):
        cache.set("k", 1, ttl=1)
        clock.advance(5)
        assert cache.peek("k") == 1
        assert cache.peek("other") is MISS

    @pytest.mark.asyncio
    async def test_real_clock_expiry(self):
        real = CacheCoordinator(default_ttl=0.1)
        real.set("k", "v")
        assert real.get("k") == "v"
        await asyncio.sleep(0.15)
        assert real.get("k") is MISS


class TestStats:
    def test_hit_and_miss_counters(self, cache):
        cache.get("missing")
        cache.set("k", 1)
        cache.get("k")
        cache.get("k")
        stats = cache.stats()
        assert stats["hitCount"] == 2
        assert stats["missCount"] == 1
        assert stats["hitRate"] == pytest.approx(200 / 3)
        assert stats["entryCount"] == 1

    def test_has_does_not_count(self, cache):
        cache.set("k", 1)
        cache.has("k")
        cache.has("nope")
        assert cache.stats()["hitCount"] == 0
        assert cache.stats()["missCount"] == 0

    def test_clear_resets_everything(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.clear()
        assert len(cache) == 0
        assert cache.stats()["hitCount"] == 0

    def test_info(self, cache, clock):
        assert cache.info("k") is None
        cache.set("k", 1, ttl=10)
        clock.advance(4)
        info = cache.info("k")
        assert info["age"] == pytest.approx(4)
        assert not info["expired"]


class TestSweep:
    def test_sweep_removes_only_expired(self, cache, clock):
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(5)
        assert cache.sweep() == 1
        assert cache.keys() == ["long"]

    @pytest.mark.asyncio
    async def test_start_and_close(self):
        coordinator = CacheCoordinator(default_ttl=0.01, sweep_interval=0.02)
        coordinator.set("k", 1)
        coordinator.start()
        await asyncio.sleep(0.06)
        assert len(coordinator) == 0
        await coordinator.close()


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, cache):
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return "value"

        results = await asyncio.gather(*(cache.get_or_compute("k", 10, compute) for _ in range(20)))
        assert results == ["value"] * 20
        assert calls == 1
        assert not cache.is_in_flight("k")
        assert cache.get("k") == "value"

    @pytest.mark.asyncio
    async def test_fresh_value_skips_compute(self, cache):
        cache.set("k", "cached", ttl=10)

        async def compute():
            raise AssertionError("should not run")

        assert await cache.get_or_compute("k", 10, compute) == "cached"

    @pytest.mark.asyncio
    async def test_failure_reaches_all_waiters_and_clears_marker(self, cache):
        calls = 0

        async def boom():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("exchange down")

        results = await asyncio.gather(
            *(cache.get_or_compute("k", 10, boom) for _ in range(5)),
            return_exceptions=True,
        )
        assert calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert not cache.is_in_flight("k")
        assert cache.peek("k") is MISS

        async def ok():
            return 42

        assert await cache.get_or_compute("k", 10, ok) == 42

    @pytest.mark.asyncio
    async def test_force_recomputes_fresh_entry(self, cache):
        cache.set("k", "old", ttl=10)

        async def compute():
            return "new"

        assert await cache.get_or_compute("k", 10, compute, force=True) == "new"
        assert cache.get("k") == "new"

    @pytest.mark.asyncio
    async def test_force_joins_in_flight_computation(self, cache):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return calls

        first = asyncio.ensure_future(cache.get_or_compute("k", 10, compute))
        await asyncio.sleep(0)
        assert cache.is_in_flight("k")
        forced = asyncio.ensure_future(cache.get_or_compute("k", 10, compute, force=True))
        await asyncio.sleep(0)
        release.set()
        assert await first == 1
        assert await forced == 1
        assert calls == 1

    @pytest.mark.asyncio
    async def test_waiter_timeout_does_not_cancel_compute(self, cache):
        async def slow():
            await asyncio.sleep(0.05)
            return "done"

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.get_or_compute("k", 10, slow), timeout=0.01)
        await asyncio.sleep(0.08)
        assert cache.get("k") == "done"
        assert not cache.is_in_flight("k")
