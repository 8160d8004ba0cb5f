"""HTTP response caching for API routes.

``ResponseCacheMiddleware`` stores successful JSON ``GET`` responses through
the ``CacheService`` and replays them on later requests, tagging each one
with ``X-Cache: HIT`` or ``MISS``. Responses carry an ``ETag`` so clients
revalidating with ``If-None-Match`` get a bodiless 304.

The ETag and ``Cache-Control`` helpers can also be used from route handlers
directly.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urlencode

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from aias.app.core.config import settings
from aias.app.core.logging import get_log_context, get_logger
from aias.app.services.cache_service import CacheService, get_cache_service

logger = get_logger(__name__)

__all__ = [
    "CacheControl",
    "ResponseCacheMiddleware",
    "add_cache_headers",
    "build_response_cache_key",
    "check_etag",
    "generate_etag",
]

# Recomputed on replay, or never worth sharing between callers
_UNSTORED_HEADERS = frozenset({"content-length", "etag", "set-cookie", "x-cache", "x-cache-key"})


@dataclass(frozen=True)
class CacheControl:
    """Directives for the ``Cache-Control`` response header."""

    max_age: Optional[int] = None
    stale_while_revalidate: Optional[int] = None
    must_revalidate: bool = False
    private: bool = False
    no_store: bool = False
    no_cache: bool = False

    def header_value(self) -> str:
        """Render the header; ``no_store`` and ``no_cache`` override the rest."""
        if self.no_store:
            return "no-store"
        if self.no_cache:
            return "no-cache, must-revalidate"

        directives = ["private" if self.private else "public"]
        if self.max_age is not None:
            directives.append(f"max-age={self.max_age}")
        if self.stale_while_revalidate is not None:
            directives.append(f"stale-while-revalidate={self.stale_while_revalidate}")
        if self.must_revalidate:
            directives.append("must-revalidate")
        return ", ".join(directives)


def generate_etag(content: Any) -> str:
    """Strong ETag for a body; non-string content is hashed as sorted JSON."""
    if isinstance(content, bytes):
        payload = content
    elif isinstance(content, str):
        payload = content.encode("utf-8")
    else:
        payload = json.dumps(content, sort_keys=True, default=str).encode("utf-8")
    return f'"{hashlib.sha256(payload).hexdigest()[:32]}"'


def _etag_matches(request: Request, etag: str) -> bool:
    if_none_match = request.headers.get("If-None-Match")
    if not if_none_match:
        return False
    candidates = [tag.strip() for tag in if_none_match.split(",")]
    return "*" in candidates or etag in candidates or f"W/{etag}" in candidates


def check_etag(
    request: Request,
    etag: str,
    cache_control: Optional[CacheControl] = None,
) -> Optional[Response]:
    """Return a 304 response when ``If-None-Match`` matches ``etag``, else None."""
    if not _etag_matches(request, etag):
        return None
    control = cache_control or CacheControl(max_age=3600)
    return Response(
        status_code=304,
        headers={"ETag": etag, "Cache-Control": control.header_value()},
    )


def add_cache_headers(response: Response, config: CacheControl) -> Response:
    """Set ``Cache-Control`` on ``response`` and return it."""
    response.headers["Cache-Control"] = config.header_value()
    return response


def build_response_cache_key(
    request: Request,
    vary_by_query: bool = True,
    vary_by_headers: Sequence[str] = (),
) -> str:
    """Cache key for a request: path, sorted query string and chosen headers."""
    path = request.url.path
    parts = [path]

    if vary_by_query and request.query_params:
        parts.append(urlencode(sorted(request.query_params.multi_items())))

    header_values = [request.headers.get(name, "") for name in vary_by_headers]
    if any(header_values):
        parts.append(":".join(header_values))

    return CacheService.generate_api_key(path, {"key": ":".join(parts)})


def _is_json(response: Response) -> bool:
    return response.headers.get("content-type", "").startswith("application/json")


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Middleware caching successful JSON ``GET`` responses.

    Only 2xx JSON responses are stored. Other methods, paths outside
    ``paths`` and requests for which ``skip_cache`` returns True go straight
    to the route.
    """

    def __init__(
        self,
        app: ASGIApp,
        ttl_seconds: Optional[float] = None,
        paths: Optional[Sequence[str]] = None,
        vary_by_query: bool = True,
        vary_by_headers: Optional[Sequence[str]] = None,
        skip_cache: Optional[Callable[[Request], bool]] = None,
        cache_control: Optional[CacheControl] = None,
        service: Optional[CacheService] = None,
    ):
        """Initialize response cache middleware.

        Args:
            app: ASGI application
            ttl_seconds: Lifetime of stored responses
            paths: Path prefixes to cache; empty caches every path
            vary_by_query: Include the query string in the cache key
            vary_by_headers: Request headers whose values vary the key
            skip_cache: Predicate that bypasses the cache for a request
            cache_control: ``Cache-Control`` for served responses; defaults
                to public with ``max-age`` equal to the TTL
            service: Cache service to use; defaults to the process-wide one
        """
        super().__init__(app)
        self._ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.response_cache_ttl_seconds
        )
        self._paths = tuple(paths if paths is not None else settings.response_cache_paths)
        self._vary_by_query = vary_by_query
        self._vary_by_headers = tuple(
            vary_by_headers if vary_by_headers is not None else settings.response_cache_vary_headers
        )
        self._skip_cache = skip_cache
        self._cache_control = cache_control or CacheControl(max_age=int(self._ttl_seconds))
        self._service = service

    @property
    def service(self) -> CacheService:
        return self._service or get_cache_service()

    def _should_cache(self, request: Request) -> bool:
        if request.method != "GET":
            return False
        path = request.url.path
        if self._paths and not any(path.startswith(prefix) for prefix in self._paths):
            return False
        return not (self._skip_cache is not None and self._skip_cache(request))

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Serve from the cache or run the route and store its response."""
        if not self._should_cache(request):
            return await call_next(request)

        path = request.url.path
        key = build_response_cache_key(request, self._vary_by_query, self._vary_by_headers)

        cached = await self.service.get(key, prefix="")
        stored = cached.value if cached.hit else None
        if isinstance(stored, dict) and isinstance(stored.get("body"), str):
            logger.info("API cache hit", extra=get_log_context(path=path, cache_key=key))
            response = Response(
                content=stored["body"],
                status_code=stored.get("status", 200),
                headers=stored.get("headers") or {},
            )
            return self._finish(request, response, key, "HIT")

        logger.info("API cache miss", extra=get_log_context(path=path, cache_key=key))
        response = await call_next(request)
        if not 200 <= response.status_code < 300 or not _is_json(response):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        fresh = Response(content=body, status_code=response.status_code, headers=response.headers)
        try:
            text = body.decode("utf-8")
            json.loads(text)
        except ValueError:
            return fresh

        headers: Dict[str, str] = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in _UNSTORED_HEADERS
        }
        await self.service.set(
            key,
            {"body": text, "status": response.status_code, "headers": headers},
            ttl_seconds=self._ttl_seconds,
            prefix="",
        )
        return self._finish(request, fresh, key, "MISS")

    def _finish(self, request: Request, response: Response, key: str, outcome: str) -> Response:
        etag = generate_etag(response.body)
        not_modified = check_etag(request, etag, self._cache_control)
        if not_modified is not None:
            response = not_modified
        else:
            response.headers["ETag"] = etag
            if "cache-control" not in response.headers:
                add_cache_headers(response, self._cache_control)

        response.headers["X-Cache"] = outcome
        response.headers["X-Cache-Key"] = key
        return response
