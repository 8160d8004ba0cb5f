from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from aias.app.core.cache import get_memory_cache, reset_memory_cache
from aias.app.core.config import settings
from aias.app.core.kv_store import reset_kv_store
from aias.app.core.logging import get_logger, setup_logging
from aias.app.exceptions import AIASException, CircuitBreakerOpenError
from aias.app.middleware.cache import ResponseCacheMiddleware
from aias.app.middleware.rate_limit import RateLimitMiddleware, get_rate_limiter
from aias.app.resilience.circuit_breaker import circuit_breaker_registry


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the cache sweeper on startup and release remote stores on shutdown."""
        get_memory_cache().start()
        logger.info(
            "Application startup complete",
            extra={
                "backend": get_rate_limiter().backend_name(),
                "rate_limit_enabled": settings.rate_limit_enabled,
                "response_cache_enabled": settings.response_cache_enabled,
                "debug_mode": settings.debug,
            },
        )

        yield

        await reset_memory_cache()
        await reset_kv_store()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="AIAS Platform",
        description="Rate limiting, response caching, retry and circuit breaking for platform API routes",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Added last runs first: rate limiting sees requests before the cache does
    if settings.response_cache_enabled:
        app.add_middleware(ResponseCacheMiddleware)
    if settings.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check reporting which rate limit backend is in use."""
        return {
            "status": "ok",
            "components": {
                "rate_limit": {
                    "enabled": settings.rate_limit_enabled,
                    "backend": get_rate_limiter().backend_name(),
                },
                "response_cache": {"enabled": settings.response_cache_enabled},
            },
        }

    @app.get("/health/circuits")
    async def circuits() -> dict[str, Any]:
        """Metrics for every registered circuit breaker."""
        return {"circuits": circuit_breaker_registry.get_all_metrics()}

    @app.exception_handler(CircuitBreakerOpenError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerOpenError) -> JSONResponse:
        """Handle CircuitBreakerOpenError and return HTTP 503 response."""
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(exc.retry_after + 0.999)))
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "service_unavailable", "message": exc.message, "service": exc.name},
            headers=headers,
        )

    @app.exception_handler(AIASException)
    async def platform_error_handler(request: Request, exc: AIASException) -> JSONResponse:
        """Map platform exceptions to their HTTP status."""
        logger.warning(
            f"Request failed: {exc.message}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    return app


app = create_app()
