"""Rate limiting for API routes.

This module provides fixed window rate limiting keyed by (path, identifier)
to prevent abuse of the platform's API routes. State lives in memory by
default; when a remote key-value store is configured the limiter shares
counts across instances and falls back to memory whenever the store fails.

The limiter protects against abuse, not correctness: ``check_rate_limit``
never raises and answers "allowed" whenever it cannot decide.
"""

import hashlib
from typing import Any, Callable, Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from aias.app.core.config import settings
from aias.app.core.kv_store import KeyValueStore, get_kv_store
from aias.app.core.logging import get_log_context, get_logger
from aias.app.exceptions import RateLimitExceededError

# Re-export models
from aias.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
)

# Re-export backends
from aias.app.middleware.rate_limit.backends import (
    InMemoryRateLimiter,
    RateLimitBackend,
    RemoteRateLimiter,
    _now_ms,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitEntry",
    "RateLimitResult",
    # Backends
    "RateLimitBackend",
    "InMemoryRateLimiter",
    "RemoteRateLimiter",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    # Helpers
    "build_rate_limit_key",
    "check_rate_limit",
    "get_client_ip",
    "get_rate_limiter",
    "reset_rate_limiter",
]

StoreFactory = Callable[[], Optional[KeyValueStore]]


def build_rate_limit_key(path: str, identifier: str) -> str:
    """Compose the storage key for a (path, identifier) pair.

    Raises:
        ValueError: If either part is empty.
    """
    if not path or not identifier:
        raise ValueError("path and identifier must be non-empty strings")
    return f"rate_limit:{path}:{identifier}"


class RateLimiter:
    """Fixed window limiter that selects its backing store per call.

    The remote store is looked up through ``store_factory`` on every check,
    so configuration read at call time decides between the shared store and
    the in-memory map.
    """

    def __init__(
        self,
        memory_backend: Optional[InMemoryRateLimiter] = None,
        store_factory: Optional[StoreFactory] = get_kv_store,
        clock: Callable[[], int] = _now_ms,
    ):
        """Initialize the rate limiter.

        Args:
            memory_backend: In-memory backend; a new one is created if omitted
            store_factory: Returns the remote store or None; pass None to
                disable remote lookups entirely
            clock: Returns the current time in epoch milliseconds
        """
        self._memory = memory_backend if memory_backend is not None else InMemoryRateLimiter(
            sweep_probability=settings.rate_limit_sweep_probability
        )
        self._store_factory = store_factory
        self._clock = clock

    @property
    def memory(self) -> InMemoryRateLimiter:
        return self._memory

    def _remote_store(self) -> Optional[KeyValueStore]:
        if self._store_factory is None:
            return None
        try:
            return self._store_factory()
        except Exception as e:
            logger.warning(f"Remote store lookup failed, using in-memory: {e}")
            return None

    async def check_rate_limit(
        self,
        path: str,
        identifier: str,
        config: RateLimitConfig | Mapping[str, Any],
    ) -> RateLimitResult:
        """Count a request for (path, identifier) and report the outcome.

        Never raises: invalid input or backend failures degrade to allowing
        the request.
        """
        now = self._clock()
        try:
            cfg = RateLimitConfig.coerce(config)
            key = build_rate_limit_key(path, identifier)
        except Exception as e:
            logger.warning(
                f"Invalid rate limit input, allowing request: {e}",
                extra=get_log_context(path=path, backend="fail-open"),
            )
            return self._fail_open(None, now)

        store = self._remote_store()
        if store is not None:
            try:
                return await RemoteRateLimiter(store).check(key, cfg, now)
            except Exception as e:
                logger.warning(
                    f"Remote rate limit check failed, falling back to in-memory: {e}",
                    extra=get_log_context(path=path, backend=store.backend_name, fallback="in-memory"),
                )

        try:
            return self._memory.check_sync(key, cfg, now)
        except Exception as e:
            logger.warning(
                f"In-memory rate limit check failed, allowing request: {e}",
                extra=get_log_context(path=path, backend="fail-open"),
            )
            return self._fail_open(cfg, now)

    @staticmethod
    def _fail_open(cfg: Optional[RateLimitConfig], now: int) -> RateLimitResult:
        if cfg is None:
            return RateLimitResult(
                allowed=True, remaining=0, reset_time=now, backend="fail-open", checked_at=now
            )
        return RateLimitResult(
            allowed=True,
            remaining=cfg.max_requests,
            reset_time=now + cfg.window_ms,
            limit=cfg.max_requests,
            backend="fail-open",
            checked_at=now,
        )

    async def reset(self, path: str, identifier: str) -> None:
        """Forget the window for (path, identifier) in every backend."""
        key = build_rate_limit_key(path, identifier)
        self._memory.reset(key)
        store = self._remote_store()
        if store is not None:
            try:
                await RemoteRateLimiter(store).reset(key)
            except Exception as e:
                logger.warning(f"Remote rate limit reset failed: {e}", extra={"backend": store.backend_name})

    async def get_count(self, path: str, identifier: str) -> int:
        """Requests counted in the live window (0 when none)."""
        key = build_rate_limit_key(path, identifier)
        now = self._clock()
        store = self._remote_store()
        if store is not None:
            try:
                return await RemoteRateLimiter(store).get_count(key, now)
            except Exception as e:
                logger.warning(f"Remote rate limit lookup failed: {e}", extra={"backend": store.backend_name})
        return self._memory.get_count(key, now)

    def sweep(self) -> int:
        """Evict expired in-memory entries now."""
        return self._memory.sweep(self._clock())

    def backend_name(self) -> str:
        """Name of the backend the next check will try first."""
        store = self._remote_store()
        return store.backend_name if store is not None else self._memory.name


# Global limiter instance (singleton pattern)
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the process-wide rate limiter. Primarily useful for testing."""
    global _rate_limiter
    _rate_limiter = None


async def check_rate_limit(
    path: str,
    identifier: str,
    config: RateLimitConfig | Mapping[str, Any],
) -> RateLimitResult:
    """Check a request against the process-wide limiter.

    Example:
        >>> result = await check_rate_limit(
        ...     "/api/contact", get_client_ip(request),
        ...     RateLimitConfig(window_ms=60_000, max_requests=10),
        ... )
        >>> if not result.allowed:
        ...     return JSONResponse({"error": "Too Many Requests"}, status_code=429)
    """
    return await get_rate_limiter().check_rate_limit(path, identifier, config)


def get_client_ip(request: Request) -> str:
    """Best-effort client IP from proxy headers or the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Limits are applied per (path, caller). The caller is identified by a hash
    of the bearer API key if present, otherwise by client IP.
    """

    def __init__(
        self,
        app: ASGIApp,
        default_config: Optional[RateLimitConfig] = None,
        path_limits: Optional[Mapping[str, RateLimitConfig]] = None,
        exclude_paths: Optional[list[str]] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        """Initialize rate limit middleware.

        Args:
            app: ASGI application
            default_config: Limit for paths without a specific entry
            path_limits: Path prefix to limit; the longest matching prefix wins
            exclude_paths: Paths that bypass rate limiting
            limiter: Limiter to use; defaults to the process-wide one
        """
        super().__init__(app)
        self._default_config = default_config or RateLimitConfig(
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        )
        self._path_limits = sorted(
            (path_limits or {}).items(), key=lambda item: len(item[0]), reverse=True
        )
        self._exclude_paths = set(
            exclude_paths if exclude_paths is not None else settings.rate_limit_exclude_paths
        )
        self._limiter = limiter

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or get_rate_limiter()

    def _config_for(self, path: str) -> RateLimitConfig:
        for prefix, config in self._path_limits:
            if path.startswith(prefix):
                return config
        return self._default_config

    def _get_client_key(self, request: Request) -> str:
        """Get the caller identifier for the request.

        API keys are hashed using SHA-256 so raw keys are never stored in
        memory or in the remote store.
        """
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            api_key = auth[7:].strip()
            if api_key:
                key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
                return f"apikey:{key_hash}"
        return f"ip:{get_client_ip(request)}"

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        if path in self._exclude_paths:
            return await call_next(request)

        identifier = self._get_client_key(request)
        result = await self.limiter.check_rate_limit(path, identifier, self._config_for(path))

        headers = {
            "X-RateLimit-Limit": str(result.limit if result.limit is not None else ""),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_time),
        }

        if not result.allowed:
            error = RateLimitExceededError(result)
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(path=path, identifier=identifier, backend=result.backend),
            )
            headers["Retry-After"] = str(result.retry_after_seconds)
            return JSONResponse(error.to_response(), status_code=error.status_code, headers=headers)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
