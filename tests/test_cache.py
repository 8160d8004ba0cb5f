"""Tests for the in-memory TTL cache."""

import asyncio
import time

import pytest

from aias.app.core import cache as cache_module
from aias.app.core.cache import (
    MemoryCache,
    _CacheEntry,
    generate_cache_key,
    get_memory_cache,
    reset_memory_cache,
    with_cache,
)


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock, autostart=False)


class TestCacheEntry:
    """Tests for the internal _CacheEntry class."""

    def test_entry_valid_until_expiry(self):
        entry = _CacheEntry(data="v", expires=1000)
        assert not entry.is_expired(1000)
        assert entry.is_expired(1001)


class TestMemoryCache:
    """Tests for MemoryCache."""

    def test_set_and_get(self, cache):
        """Can store and retrieve values."""
        cache.set("key1", {"plan": "pro"}, ttl_seconds=60)
        assert cache.get("key1") == {"plan": "pro"}

    def test_get_nonexistent_key(self, cache):
        assert cache.get("nonexistent") is None

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.set("key1", "v", ttl_seconds=1)
        assert cache.get("key1") == "v"

        clock.advance(1000)
        assert cache.get("key1") == "v"

        clock.advance(1)
        assert cache.get("key1") is None

    def test_entry_expires_after_ttl_real_time(self):
        cache = MemoryCache(autostart=False)
        cache.set("key1", "v", ttl_seconds=0.05)
        assert cache.get("key1") == "v"

        time.sleep(0.1)

        assert cache.get("key1") is None

    def test_overwrite_keeps_latest_value(self, cache):
        cache.set("key1", "first", ttl_seconds=60)
        cache.set("key1", "second", ttl_seconds=60)
        assert cache.get("key1") == "second"
        assert len(cache) == 1

    def test_overwrite_replaces_ttl(self, cache, clock):
        cache.set("key1", "first", ttl_seconds=1)
        cache.set("key1", "second", ttl_seconds=10)
        clock.advance(5000)
        assert cache.get("key1") == "second"

    def test_expired_entry_removed_on_read(self, cache, clock):
        cache.set("key1", "v", ttl_seconds=1)
        clock.advance(2000)

        assert "key1" in cache
        cache.get("key1")
        assert "key1" not in cache

    def test_delete_and_clear(self, cache):
        cache.set("key1", "v", ttl_seconds=60)
        cache.set("key2", "v", ttl_seconds=60)

        cache.delete("key1")
        cache.delete("missing")
        assert cache.get("key1") is None

        cache.clear()
        assert len(cache) == 0

    def test_sweep_removes_only_expired(self, cache, clock):
        cache.set("short", "v", ttl_seconds=1)
        cache.set("long", "v", ttl_seconds=600)
        clock.advance(5000)

        assert cache.sweep() == 1
        assert "short" not in cache
        assert "long" in cache

    def test_not_started_outside_event_loop(self):
        cache = MemoryCache()
        assert cache.running is False

    def test_start_requires_running_loop(self):
        cache = MemoryCache(autostart=False)
        with pytest.raises(RuntimeError):
            cache.start()


class TestSweepTask:
    """Tests for the background sweep lifecycle."""

    @pytest.mark.asyncio
    async def test_autostarts_inside_event_loop(self):
        cache = MemoryCache(sweep_interval=60)
        assert cache.running is True
        await cache.stop()
        assert cache.running is False

    @pytest.mark.asyncio
    async def test_background_sweep_evicts_without_reads(self):
        cache = MemoryCache(sweep_interval=0.01)
        cache.set("key1", "v", ttl_seconds=0.001)

        await asyncio.sleep(0.1)

        assert len(cache) == 0
        await cache.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_is_safe_twice(self):
        cache = MemoryCache(sweep_interval=60, autostart=False)
        cache.start()
        task = cache._sweep_task
        cache.start()
        assert cache._sweep_task is task

        await cache.stop()
        await cache.stop()
        assert task.cancelled()


class TestWithCache:
    """Tests for the with_cache helper."""

    @pytest.mark.asyncio
    async def test_fetches_once_then_serves_cached(self, cache):
        calls = []

        async def fetcher():
            calls.append(1)
            return {"total": 42}

        first = await with_cache("cache:/api/stats", fetcher, ttl_seconds=60, cache=cache)
        second = await with_cache("cache:/api/stats", fetcher, ttl_seconds=60, cache=cache)

        assert first == second == {"total": 42}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refetches_after_expiry(self, cache, clock):
        values = iter(["old", "new"])

        async def fetcher():
            return next(values)

        assert await with_cache("k", fetcher, ttl_seconds=1, cache=cache) == "old"
        clock.advance(1001)
        assert await with_cache("k", fetcher, ttl_seconds=1, cache=cache) == "new"

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache):
        calls = []

        async def fetcher():
            calls.append(1)
            return None

        assert await with_cache("k", fetcher, cache=cache) is None
        assert await with_cache("k", fetcher, cache=cache) is None
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_fetcher_errors_propagate_and_are_not_cached(self, cache):
        async def fetcher():
            raise RuntimeError("database unavailable")

        with pytest.raises(RuntimeError, match="database unavailable"):
            await with_cache("k", fetcher, cache=cache)
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_concurrent_misses_each_fetch_by_default(self, cache):
        calls = []

        async def fetcher():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "v"

        await asyncio.gather(*(with_cache("k", fetcher, cache=cache) for _ in range(5)))

        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_single_flight_shares_one_fetch(self, cache):
        calls = []

        async def fetcher():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "v"

        results = await asyncio.gather(
            *(with_cache("k", fetcher, cache=cache, single_flight=True) for _ in range(5))
        )

        assert results == ["v"] * 5
        assert len(calls) == 1
        assert cache_module._inflight_locks == {}

    @pytest.mark.asyncio
    async def test_single_flight_lock_outlives_release_while_callers_wait(self, cache):
        gate = asyncio.Event()
        active = 0
        peak = 0

        async def fetcher():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await gate.wait()
            await asyncio.sleep(0)
            active -= 1
            return None

        first = asyncio.create_task(with_cache("k", fetcher, cache=cache, single_flight=True))
        await asyncio.sleep(0)
        queued = asyncio.create_task(with_cache("k", fetcher, cache=cache, single_flight=True))
        await asyncio.sleep(0)
        assert cache_module._inflight_locks["k"].waiters == 2

        gate.set()
        assert await first is None
        assert "k" in cache_module._inflight_locks

        late = asyncio.create_task(with_cache("k", fetcher, cache=cache, single_flight=True))
        assert await asyncio.gather(queued, late) == [None, None]

        assert peak == 1
        assert cache_module._inflight_locks == {}

    @pytest.mark.asyncio
    async def test_defaults_to_process_wide_cache(self):
        async def fetcher():
            return "shared"

        await with_cache("k", fetcher)

        assert get_memory_cache().get("k") == "shared"
        await reset_memory_cache()


class TestGenerateCacheKey:
    """Tests for generate_cache_key."""

    def test_path_only(self):
        assert generate_cache_key("/api/stats") == "cache:/api/stats"

    def test_with_query(self):
        key = generate_cache_key("/api/stats", {"page": "2", "q": "a b"})
        assert key == "cache:/api/stats?page=2&q=a+b"
