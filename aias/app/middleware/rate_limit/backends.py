"""Fixed window rate limit backends.

``InMemoryRateLimiter`` keeps state in a dict owned by the instance and is
enforced per process. ``RemoteRateLimiter`` persists ``{count, resetTime}``
in a shared key-value store so every instance sees the same counts.
"""

import random
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from aias.app.core.kv_store import KeyValueStore
from aias.app.core.logging import get_logger
from aias.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
)

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    name: str = "backend"

    @abstractmethod
    async def check(self, key: str, config: RateLimitConfig, now: int) -> RateLimitResult:
        """Count one request against ``key`` and report whether it is allowed."""


def _evaluate(
    entry: RateLimitEntry, config: RateLimitConfig, backend: str, now: int
) -> RateLimitResult:
    if entry.count > config.max_requests:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=entry.reset_time,
            limit=config.max_requests,
            backend=backend,
            checked_at=now,
        )
    return RateLimitResult(
        allowed=True,
        remaining=config.max_requests - entry.count,
        reset_time=entry.reset_time,
        limit=config.max_requests,
        backend=backend,
        checked_at=now,
    )


def _advance(entry: Optional[RateLimitEntry], config: RateLimitConfig, now: int) -> RateLimitEntry:
    """Open a new window or count the request in the live one.

    Rejected requests are counted too; under fixed windows this only affects
    the stored count, never the reported result.
    """
    if entry is None or entry.is_expired(now):
        return RateLimitEntry(count=1, reset_time=now + config.window_ms)
    entry.count += 1
    return entry


class InMemoryRateLimiter(RateLimitBackend):
    """Process-local fixed window limiter.

    Read, increment and write happen without an ``await`` in between, so each
    check is atomic under the event loop. Expired entries are evicted by an
    opportunistic sweep that runs on roughly ``sweep_probability`` of checks.
    """

    name = "memory"

    def __init__(
        self,
        sweep_probability: float = 0.01,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the limiter.

        Args:
            sweep_probability: Chance per check of sweeping expired entries;
                0 disables the opportunistic sweep.
            rng: Source of uniform floats in [0, 1), injectable for tests.
        """
        if not 0.0 <= sweep_probability <= 1.0:
            raise ValueError("sweep_probability must be between 0 and 1")
        self._entries: Dict[str, RateLimitEntry] = {}
        self._sweep_probability = sweep_probability
        self._rng = rng

    async def check(self, key: str, config: RateLimitConfig, now: int) -> RateLimitResult:
        return self.check_sync(key, config, now)

    def check_sync(self, key: str, config: RateLimitConfig, now: int) -> RateLimitResult:
        if self._sweep_probability and self._rng() < self._sweep_probability:
            self.sweep(now)

        entry = _advance(self._entries.get(key), config, now)
        self._entries[key] = entry
        return _evaluate(entry, config, self.name, now)

    def sweep(self, now: Optional[int] = None) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        now = _now_ms() if now is None else now
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(
                "Swept expired rate limit entries",
                extra={"backend": self.name, "count": len(expired)},
            )
        return len(expired)

    def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def get_count(self, key: str, now: Optional[int] = None) -> int:
        now = _now_ms() if now is None else now
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(now):
            return 0
        return entry.count

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class RemoteRateLimiter(RateLimitBackend):
    """Fixed window limiter persisted in a shared key-value store.

    One read and one write per check. The two are not atomic across
    instances; concurrent requests may both read the same count, which lets a
    few extra requests through under contention. Store errors propagate so
    the caller can fail over.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self.name = store.backend_name

    async def check(self, key: str, config: RateLimitConfig, now: int) -> RateLimitResult:
        stored = RateLimitEntry.from_dict(await self._store.get_json(key))
        entry = _advance(stored, config, now)
        await self._store.set_json(key, entry.to_dict(), ttl_ms=max(1, entry.reset_time - now))
        return _evaluate(entry, config, self.name, now)

    async def reset(self, key: str) -> None:
        await self._store.delete(key)

    async def get_count(self, key: str, now: int) -> int:
        entry = RateLimitEntry.from_dict(await self._store.get_json(key))
        if entry is None or entry.is_expired(now):
            return 0
        return entry.count
