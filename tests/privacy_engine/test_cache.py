"""
Cache Tests.

============================================================
PURPOSE
============================================================
Tests for the TTL cache and async single-flight.

TEST CATEGORIES:
- Read/write and LRU eviction
- TTL expiry on the monotonic clock
- Single-flight population (threads and coroutines)
- Entry lifecycle states

============================================================
"""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from core.clock import MockClock
from privacy_engine.cache import AsyncSingleFlight, EntryState, TTLCache


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def cache(clock):
    return TTLCache(max_size=3, default_ttl=10.0, clock=clock, name="test")


# ============================================================
# TTL CACHE TESTS
# ============================================================

class TestTTLCache:
    """Tests for TTLCache."""

    def test_set_and_get(self, cache):
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_missing_key_returns_default(self, cache):
        assert cache.get("missing") is None
        assert cache.get("missing", "fallback") == "fallback"

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.set("a", 1)

        clock.advance(9.9)
        assert cache.get("a") == 1

        clock.advance(0.2)
        assert cache.get("a") is None
        assert cache.get_stats()["expirations"] == 1

    def test_per_entry_ttl_overrides_default(self, cache, clock):
        cache.set("short", 1, ttl=1.0)
        cache.set("long", 2)

        clock.advance(2.0)

        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_wall_clock_jumps_do_not_expire_entries(self, cache, clock):
        from datetime import datetime, timezone

        cache.set("a", 1)
        clock.set_time(datetime(2030, 1, 1, tzinfo=timezone.utc))

        assert cache.get("a") == 1

    def test_lru_eviction(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        cache.get("a")

        cache.set("d", 4)

        assert "b" not in cache
        assert "a" in cache
        assert cache.get_stats()["evictions"] == 1

    def test_invalid_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("a", 1, ttl=0)

    def test_invalid_size_rejected(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0)

    def test_purge_expired(self, cache, clock):
        cache.set("a", 1, ttl=1.0)
        cache.set("b", 2)

        clock.advance(5.0)

        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.clear()

        assert len(cache) == 0

    def test_hit_rate(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0


class TestGetOrCompute:
    """Tests for single-flight population."""

    def test_computes_once_then_hits(self, cache):
        calls = []

        def factory():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", factory) == "value"
        assert cache.get_or_compute("k", factory) == "value"
        assert len(calls) == 1

    def test_concurrent_misses_compute_once(self):
        cache = TTLCache(max_size=10)
        calls = []
        lock = threading.Lock()

        def factory():
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return 42

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: cache.get_or_compute("k", factory), range(8)))

        assert results == [42] * 8
        assert len(calls) == 1

    def test_factory_exception_not_cached(self, cache):
        def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", failing)

        assert "k" not in cache
        assert cache.get_or_compute("k", lambda: 7) == 7

    def test_recomputes_after_expiry(self, cache, clock):
        values = iter([1, 2])

        assert cache.get_or_compute("k", lambda: next(values)) == 1
        clock.advance(11.0)
        assert cache.get_or_compute("k", lambda: next(values)) == 2

    def test_entry_lifecycle(self, cache, clock):
        observed = []

        def factory():
            observed.append(cache.state("k"))
            return 1

        assert cache.state("k") is EntryState.MISS
        cache.get_or_compute("k", factory)

        assert observed == [EntryState.COMPUTING]
        assert cache.state("k") is EntryState.CACHED

        clock.advance(10.0)
        assert cache.state("k") is EntryState.MISS


# ============================================================
# ASYNC SINGLE-FLIGHT TESTS
# ============================================================

class TestAsyncSingleFlight:
    """Tests for AsyncSingleFlight."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_coalesce(self):
        flight = AsyncSingleFlight()
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return 42

        results = await asyncio.gather(*[flight.run("k", compute) for _ in range(5)])

        assert results == [42] * 5
        assert calls == 1
        stats = flight.get_stats()
        assert stats["leaders"] == 1
        assert stats["coalesced"] == 4
        assert not flight.in_flight("k")

    @pytest.mark.asyncio
    async def test_distinct_keys_run_separately(self):
        flight = AsyncSingleFlight()

        async def compute(value):
            await asyncio.sleep(0)
            return value

        a, b = await asyncio.gather(
            flight.run("a", lambda: compute(1)),
            flight.run("b", lambda: compute(2)),
        )

        assert (a, b) == (1, 2)
        assert flight.get_stats()["leaders"] == 2

    @pytest.mark.asyncio
    async def test_exception_reaches_every_waiter(self):
        flight = AsyncSingleFlight()

        async def failing():
            await asyncio.sleep(0.01)
            raise ValueError("boom")

        results = await asyncio.gather(
            *[flight.run("k", failing) for _ in range(3)],
            return_exceptions=True,
        )

        assert all(isinstance(r, ValueError) for r in results)
        assert not flight.in_flight("k")
