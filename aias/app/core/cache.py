"""In-memory TTL cache with lazy eviction and a background sweep.

Entries expire ``ttl_seconds`` after they are written. Expired entries are
removed lazily on ``get`` and periodically by a sweep task owned by the
cache instance (``start()`` / ``stop()``), so memory stays bounded even when
traffic is low.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Mapping, Optional, TypeVar
from urllib.parse import urlencode

from aias.app.core.config import settings
from aias.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _CacheEntry(Generic[T]):
    """Internal cache entry with TTL tracking (epoch milliseconds)."""

    data: T
    expires: int

    def is_expired(self, now: int) -> bool:
        return now > self.expires


class MemoryCache(Generic[T]):
    """Process-local key/value cache with per-entry expiry.

    Note: This cache is not distributed and data is lost when the
    application restarts. Use ``CacheService`` for a remote-backed cache.
    """

    def __init__(
        self,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], int] = _now_ms,
        autostart: bool = True,
    ) -> None:
        """Initialize the cache.

        Args:
            sweep_interval: Seconds between background sweeps. Defaults to
                ``settings.cache_sweep_interval_seconds``.
            clock: Returns the current time in epoch milliseconds.
            autostart: Start the sweep task immediately when constructed
                inside a running event loop.
        """
        self._data: Dict[str, _CacheEntry[T]] = {}
        self._clock = clock
        self._sweep_interval = (
            sweep_interval if sweep_interval is not None else settings.cache_sweep_interval_seconds
        )
        self._sweep_task: Optional[asyncio.Task] = None

        if autostart:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                pass  # started later from the application lifespan
            else:
                self.start()

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None when absent or expired."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry.data

    def set(self, key: str, data: T, ttl_seconds: float) -> None:
        """Store a value, replacing any existing entry for the key."""
        self._data[key] = _CacheEntry(
            data=data, expires=self._clock() + int(ttl_seconds * 1000)
        )

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def sweep(self, now: Optional[int] = None) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock() if now is None else now
        expired_keys = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._data[key]
        if expired_keys:
            logger.debug("Swept expired cache entries", extra={"count": len(expired_keys)})
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    @property
    def running(self) -> bool:
        """True while the background sweep task is alive."""
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Schedule the background sweep on the running event loop.

        Raises:
            RuntimeError: If called outside a running event loop.
        """
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()


@dataclass
class _Flight:
    """Per-key single-flight lock and the number of callers holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


# Per-key locks for single-flight loading
_inflight_locks: Dict[str, _Flight] = {}

# Global cache instance (singleton pattern)
_memory_cache: Optional[MemoryCache[Any]] = None


def get_memory_cache() -> MemoryCache[Any]:
    """Get or create the process-wide memory cache."""
    global _memory_cache
    if _memory_cache is None:
        _memory_cache = MemoryCache()
    return _memory_cache


async def reset_memory_cache() -> None:
    """Stop and drop the process-wide memory cache.

    This is primarily useful for testing.
    """
    global _memory_cache
    if _memory_cache is not None:
        await _memory_cache.stop()
    _memory_cache = None
    _inflight_locks.clear()


async def with_cache(
    key: str,
    fetcher: Callable[[], Awaitable[T]],
    ttl_seconds: float = 300,
    cache: Optional[MemoryCache] = None,
    single_flight: bool = False,
) -> T:
    """Return the cached value for ``key`` or fetch, store and return it.

    Concurrent misses on the same key each call ``fetcher`` unless
    ``single_flight`` is set, in which case they share one fetch. A fetcher
    result of None is returned but not cached, since None reads as a miss.

    Example:
        >>> stats = await with_cache("cache:/api/stats", load_stats, ttl_seconds=60)
    """
    store = cache if cache is not None else get_memory_cache()

    cached = store.get(key)
    if cached is not None:
        return cached

    if not single_flight:
        return await _fetch_and_store(store, key, fetcher, ttl_seconds)

    flight = _inflight_locks.get(key)
    if flight is None:
        flight = _inflight_locks[key] = _Flight()
    flight.waiters += 1
    try:
        async with flight.lock:
            cached = store.get(key)
            if cached is not None:
                return cached
            return await _fetch_and_store(store, key, fetcher, ttl_seconds)
    finally:
        flight.waiters -= 1
        if flight.waiters == 0 and _inflight_locks.get(key) is flight:
            del _inflight_locks[key]


async def _fetch_and_store(
    store: MemoryCache, key: str, fetcher: Callable[[], Awaitable[T]], ttl_seconds: float
) -> T:
    data = await fetcher()
    if data is not None:
        store.set(key, data, ttl_seconds)
    return data


def generate_cache_key(path: str, query: Optional[Mapping[str, str]] = None) -> str:
    """Build a cache key from a route path and optional query parameters."""
    query_string = f"?{urlencode(query)}" if query else ""
    return f"cache:{path}{query_string}"
