"""Services package for the platform."""

from aias.app.services.cache_service import (
    CacheResult,
    CacheService,
    get_cache_service,
    reset_cache_service,
)

__all__ = [
    "CacheResult",
    "CacheService",
    "get_cache_service",
    "reset_cache_service",
]
