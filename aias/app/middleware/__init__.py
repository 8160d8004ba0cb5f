"""Middleware package for the platform."""

from aias.app.middleware.cache import ResponseCacheMiddleware
from aias.app.middleware.rate_limit import RateLimitMiddleware, check_rate_limit

__all__ = [
    "RateLimitMiddleware",
    "ResponseCacheMiddleware",
    "check_rate_limit",
]
