"""Remote key-value stores shared by the rate limiter and cache service.

Two interchangeable implementations are provided:

- ``RedisKeyValueStore`` talks to Redis with ``redis.asyncio``.
- ``RestKeyValueStore`` talks to an Upstash / Vercel KV compatible REST
  endpoint with ``httpx``. Commands are sent as JSON arrays, e.g.
  ``["SET", key, value, "PX", 60000]``, and answered with ``{"result": ...}``
  or ``{"error": ...}``.

Every failure surfaces as ``RemoteStoreError`` so callers can fail over with
a single ``except`` clause.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import redis
import redis.asyncio as aioredis

from aias.app.core.config import Settings, settings as default_settings
from aias.app.core.http_client import create_http_client
from aias.app.core.logging import get_logger
from aias.app.exceptions import RemoteStoreError

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for remote key-value stores."""

    backend_name: str = "remote"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None if the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        """Store a string with a time-to-live in milliseconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are not an error."""

    async def close(self) -> None:
        """Release network resources."""

    async def get_json(self, key: str) -> Any:
        """Fetch and decode a JSON value.

        Raises:
            RemoteStoreError: If the stored value is not valid JSON.
        """
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise RemoteStoreError(
                f"Malformed value stored under {key!r}", backend=self.backend_name
            ) from e

    async def set_json(self, key: str, value: Any, ttl_ms: int) -> None:
        await self.set(key, json.dumps(value, separators=(",", ":")), ttl_ms)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store using ``SET ... PX`` for expiry."""

    backend_name = "redis"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[Any] = None) -> None:
        """Initialize the Redis store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Pre-built ``redis.asyncio`` client, mainly for tests
        """
        self._redis_url = redis_url
        self._redis = client

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._get_client().get(key)
        except redis.RedisError as e:
            raise RemoteStoreError(f"Redis GET failed: {e}", backend=self.backend_name) from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        try:
            await self._get_client().set(key, value, px=max(1, int(ttl_ms)))
        except redis.RedisError as e:
            raise RemoteStoreError(f"Redis SET failed: {e}", backend=self.backend_name) from e

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except redis.RedisError as e:
            raise RemoteStoreError(f"Redis DEL failed: {e}", backend=self.backend_name) from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class RestKeyValueStore(KeyValueStore):
    """REST key-value store (Upstash / Vercel KV command protocol)."""

    backend_name = "rest"

    def __init__(
        self,
        url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._token = token
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_http_client()
        return self._client

    async def _command(self, *args: Any) -> Any:
        try:
            response = await self._get_client().post(
                self._url,
                json=[str(a) for a in args],
                headers={"Authorization": f"Bearer {self._token}"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteStoreError(
                f"KV {args[0]} returned HTTP {e.response.status_code}",
                backend=self.backend_name,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"KV {args[0]} failed: {e}", backend=self.backend_name) from e
        except ValueError as e:
            raise RemoteStoreError(
                f"KV {args[0]} returned a non-JSON body", backend=self.backend_name
            ) from e

        if not isinstance(payload, dict):
            raise RemoteStoreError(f"KV {args[0]} returned an unexpected payload", backend=self.backend_name)
        if payload.get("error"):
            raise RemoteStoreError(f"KV {args[0]} error: {payload['error']}", backend=self.backend_name)
        return payload.get("result")

    async def get(self, key: str) -> Optional[str]:
        result = await self._command("GET", key)
        if result is None:
            return None
        return result if isinstance(result, str) else json.dumps(result)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._command("SET", key, value, "PX", max(1, int(ttl_ms)))

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# Stores memoised per configuration so connections are reused across calls
_stores: dict[tuple, KeyValueStore] = {}


def get_kv_store(settings: Optional[Settings] = None) -> Optional[KeyValueStore]:
    """Return the configured remote store, or None when none is configured.

    Settings are read on every call, so configuring the environment at
    runtime switches the rate limiter and cache service over without a
    restart.

    Args:
        settings: Settings to read. Defaults to the process-wide instance.

    Returns:
        A KeyValueStore, or None to select the in-memory fallback.
    """
    cfg = settings or default_settings

    if cfg.redis_enabled and cfg.redis_url:
        config_key: tuple = ("redis", cfg.redis_url)
        if config_key not in _stores:
            _stores[config_key] = RedisKeyValueStore(cfg.redis_url)
            logger.info("Using Redis key-value store", extra={"backend": "redis"})
        return _stores[config_key]

    if cfg.kv_rest_configured:
        config_key = ("rest", cfg.kv_rest_api_url, cfg.kv_rest_api_token)
        if config_key not in _stores:
            _stores[config_key] = RestKeyValueStore(cfg.kv_rest_api_url, cfg.kv_rest_api_token)
            logger.info("Using REST key-value store", extra={"backend": "rest"})
        return _stores[config_key]

    return None


async def reset_kv_store() -> None:
    """Close and forget every memoised store."""
    stores = list(_stores.values())
    _stores.clear()
    for store in stores:
        try:
            await store.close()
        except Exception as e:
            logger.warning(f"Failed to close key-value store: {e}", extra={"backend": store.backend_name})
