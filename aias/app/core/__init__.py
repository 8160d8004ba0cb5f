"""Core utilities for the platform application."""

from aias.app.core.cache import (
    MemoryCache,
    generate_cache_key,
    get_memory_cache,
    reset_memory_cache,
    with_cache,
)
from aias.app.core.config import settings
from aias.app.core.kv_store import (
    KeyValueStore,
    RedisKeyValueStore,
    RestKeyValueStore,
    get_kv_store,
    reset_kv_store,
)
from aias.app.core.logging import get_logger, setup_logging

__all__ = [
    "MemoryCache",
    "generate_cache_key",
    "get_memory_cache",
    "reset_memory_cache",
    "with_cache",
    "settings",
    "KeyValueStore",
    "RedisKeyValueStore",
    "RestKeyValueStore",
    "get_kv_store",
    "reset_kv_store",
    "get_logger",
    "setup_logging",
]
