"""Distributed caching service.

Caches query and API results in the remote key-value store when one is
configured and falls back to the process-local ``MemoryCache`` when it is not
or when the store fails. Values are JSON encoded on the remote path.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from aias.app.core.cache import MemoryCache, get_memory_cache
from aias.app.core.config import settings
from aias.app.core.kv_store import KeyValueStore, get_kv_store
from aias.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CacheResult:
    """Outcome of a cache lookup."""

    hit: bool
    value: Any = None
    error: Optional[str] = None


def _stable_hash(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:32]


class CacheService:
    """Remote-first cache with in-memory fallback.

    Cache key format: ``{prefix}{key}``, prefix defaulting to ``cache:``.
    """

    def __init__(
        self,
        store_factory: Optional[Callable[[], Optional[KeyValueStore]]] = get_kv_store,
        memory: Optional[MemoryCache] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        """Initialize the cache service.

        Args:
            store_factory: Returns the remote store or None; consulted per call
            memory: Fallback cache; a new MemoryCache is created if omitted
            key_prefix: Default key prefix
        """
        self._store_factory = store_factory
        self._memory = memory if memory is not None else MemoryCache()
        self._key_prefix = key_prefix if key_prefix is not None else settings.cache_key_prefix

    @property
    def memory(self) -> MemoryCache:
        return self._memory

    def _cache_key(self, key: str, prefix: Optional[str]) -> str:
        return f"{prefix if prefix is not None else self._key_prefix}{key}"

    def _remote_store(self) -> Optional[KeyValueStore]:
        if self._store_factory is None:
            return None
        try:
            return self._store_factory()
        except Exception as e:
            logger.warning(f"Remote store lookup failed, using in-memory cache: {e}")
            return None

    async def get(self, key: str, prefix: Optional[str] = None) -> CacheResult:
        """Look up a value.

        Remote misses are authoritative; the memory cache is only consulted
        when no store is configured or the store fails.
        """
        cache_key = self._cache_key(key, prefix)

        store = self._remote_store()
        if store is not None:
            try:
                raw = await store.get(cache_key)
            except Exception as e:
                logger.warning(
                    f"Remote cache get failed, falling back to in-memory: {e}",
                    extra={"backend": store.backend_name, "key": cache_key},
                )
            else:
                if raw is None:
                    return CacheResult(hit=False)
                try:
                    return CacheResult(hit=True, value=json.loads(raw))
                except ValueError as e:
                    return CacheResult(hit=False, error=f"Malformed cached value: {e}")

        value = self._memory.get(cache_key)
        if value is None:
            return CacheResult(hit=False)
        return CacheResult(hit=True, value=value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        prefix: Optional[str] = None,
    ) -> None:
        cache_key = self._cache_key(key, prefix)
        ttl = ttl_seconds if ttl_seconds is not None else settings.cache_default_ttl

        store = self._remote_store()
        if store is not None:
            try:
                await store.set(cache_key, json.dumps(value, default=str), ttl_ms=int(ttl * 1000))
                return
            except Exception as e:
                logger.warning(
                    f"Remote cache set failed, falling back to in-memory: {e}",
                    extra={"backend": store.backend_name, "key": cache_key},
                )

        self._memory.set(cache_key, value, ttl)

    async def delete(self, key: str, prefix: Optional[str] = None) -> None:
        """Remove a key from the remote store and the memory cache."""
        cache_key = self._cache_key(key, prefix)

        store = self._remote_store()
        if store is not None:
            try:
                await store.delete(cache_key)
            except Exception as e:
                logger.warning(
                    f"Remote cache delete failed: {e}",
                    extra={"backend": store.backend_name, "key": cache_key},
                )

        self._memory.delete(cache_key)

    async def with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl_seconds: Optional[float] = None,
        prefix: Optional[str] = None,
    ) -> T:
        """Return the cached value or fetch, store and return it."""
        result = await self.get(key, prefix)
        if result.hit and result.value is not None:
            return result.value

        value = await fetcher()
        await self.set(key, value, ttl_seconds, prefix)
        return value

    @staticmethod
    def generate_query_key(table: str, filters: Mapping[str, Any]) -> str:
        """Stable key for a table query, independent of filter ordering."""
        return f"query:{table}:{_stable_hash(dict(filters))}"

    @staticmethod
    def generate_api_key(pathname: str, params: Mapping[str, Any]) -> str:
        """Stable key for an API response."""
        return f"api:{pathname}:{_stable_hash(dict(params))}"


# Global service instance (singleton pattern)
_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get or create the process-wide cache service."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService(memory=get_memory_cache())
    return _cache_service


def reset_cache_service() -> None:
    """Drop the process-wide cache service. Primarily useful for testing."""
    global _cache_service
    _cache_service = None
