"""Tests for HTTP response caching and cache headers."""

import pytest
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import Response

from aias.app.core.cache import MemoryCache
from aias.app.core.config import settings
from aias.app.main import create_app
from aias.app.middleware.cache import (
    CacheControl,
    ResponseCacheMiddleware,
    add_cache_headers,
    build_response_cache_key,
    check_etag,
    generate_etag,
)
from aias.app.services.cache_service import CacheService


def make_request(path="/api/stats", query="", headers=None):
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    return Request(scope)


def build_app(service, **middleware_kwargs):
    app = FastAPI()
    app.add_middleware(ResponseCacheMiddleware, service=service, **middleware_kwargs)
    app.state.calls = 0

    @app.get("/api/stats")
    async def stats(page: int = 1):
        app.state.calls += 1
        return {"page": page, "calls": app.state.calls}

    @app.post("/api/stats")
    async def refresh_stats():
        app.state.calls += 1
        return {"calls": app.state.calls}

    @app.get("/api/missing")
    async def missing():
        app.state.calls += 1
        return JSONResponse({"error": "not found"}, status_code=404)

    @app.get("/api/plain")
    async def plain():
        app.state.calls += 1
        return PlainTextResponse("plain text")

    @app.get("/health")
    async def health():
        app.state.calls += 1
        return {"status": "ok"}

    return app


@pytest.fixture
def service():
    return CacheService(store_factory=None, memory=MemoryCache(autostart=False))


class TestCacheControl:
    """Tests for Cache-Control rendering."""

    def test_public_with_max_age_and_swr(self):
        control = CacheControl(max_age=60, stale_while_revalidate=30, must_revalidate=True)
        assert control.header_value() == "public, max-age=60, stale-while-revalidate=30, must-revalidate"

    def test_private(self):
        assert CacheControl(private=True, max_age=10).header_value() == "private, max-age=10"

    def test_no_store_wins(self):
        assert CacheControl(no_store=True, max_age=60).header_value() == "no-store"

    def test_no_cache(self):
        assert CacheControl(no_cache=True).header_value() == "no-cache, must-revalidate"

    def test_add_cache_headers(self):
        response = add_cache_headers(Response("x"), CacheControl(max_age=5))
        assert response.headers["Cache-Control"] == "public, max-age=5"


class TestETag:
    """Tests for ETag helpers."""

    def test_etag_is_quoted_and_stable(self):
        etag = generate_etag('{"a":1}')
        assert etag.startswith('"') and etag.endswith('"')
        assert generate_etag('{"a":1}') == etag
        assert generate_etag(b'{"a":1}') == etag

    def test_objects_hash_independent_of_key_order(self):
        assert generate_etag({"a": 1, "b": 2}) == generate_etag({"b": 2, "a": 1})
        assert generate_etag({"a": 1}) != generate_etag({"a": 2})

    def test_check_etag_match_returns_304(self):
        etag = generate_etag("body")
        response = check_etag(make_request(headers={"If-None-Match": etag}), etag)

        assert response is not None
        assert response.status_code == 304
        assert response.headers["ETag"] == etag
        assert response.headers["Cache-Control"] == "public, max-age=3600"

    def test_check_etag_accepts_list_and_weak_tags(self):
        etag = generate_etag("body")
        request = make_request(headers={"If-None-Match": f'"other", W/{etag}'})
        assert check_etag(request, etag) is not None

    def test_check_etag_mismatch(self):
        etag = generate_etag("body")
        assert check_etag(make_request(headers={"If-None-Match": '"stale"'}), etag) is None
        assert check_etag(make_request(), etag) is None


class TestBuildResponseCacheKey:
    """Tests for request cache keys."""

    def test_key_ignores_query_order(self):
        first = build_response_cache_key(make_request(query="a=1&b=2"))
        second = build_response_cache_key(make_request(query="b=2&a=1"))
        assert first == second
        assert first.startswith("api:/api/stats:")

    def test_query_can_be_ignored(self):
        assert build_response_cache_key(make_request(query="a=1"), vary_by_query=False) == (
            build_response_cache_key(make_request(query="a=2"), vary_by_query=False)
        )

    def test_vary_by_headers(self):
        english = make_request(headers={"Accept-Language": "en"})
        german = make_request(headers={"Accept-Language": "de"})
        assert build_response_cache_key(english, vary_by_headers=["Accept-Language"]) != (
            build_response_cache_key(german, vary_by_headers=["Accept-Language"])
        )
        assert build_response_cache_key(english) == build_response_cache_key(german)


class TestResponseCacheMiddleware:
    """Tests for ResponseCacheMiddleware."""

    def test_miss_then_hit(self, service):
        app = build_app(service, ttl_seconds=60)
        client = TestClient(app)

        first = client.get("/api/stats")
        second = client.get("/api/stats")

        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert first.headers["X-Cache-Key"] == second.headers["X-Cache-Key"]
        assert second.json() == first.json() == {"page": 1, "calls": 1}
        assert second.headers["content-type"].startswith("application/json")
        assert second.headers["Cache-Control"] == "public, max-age=60"
        assert app.state.calls == 1

    def test_stored_in_cache_service(self, service):
        client = TestClient(build_app(service))

        key = client.get("/api/stats").headers["X-Cache-Key"]

        stored = service.memory.get(key)
        assert stored["status"] == 200
        assert '"calls":1' in stored["body"]
        assert "content-length" not in stored["headers"]

    def test_query_string_varies_entry(self, service):
        app = build_app(service)
        client = TestClient(app)

        assert client.get("/api/stats?page=1").headers["X-Cache"] == "MISS"
        assert client.get("/api/stats?page=2").headers["X-Cache"] == "MISS"
        assert client.get("/api/stats?page=1").json()["page"] == 1
        assert app.state.calls == 2

    def test_non_get_bypasses_cache(self, service):
        app = build_app(service)
        client = TestClient(app)

        responses = [client.post("/api/stats") for _ in range(2)]

        assert [r.json()["calls"] for r in responses] == [1, 2]
        assert "X-Cache" not in responses[-1].headers

    def test_error_responses_not_cached(self, service):
        app = build_app(service)
        client = TestClient(app)

        for _ in range(2):
            response = client.get("/api/missing")
            assert response.status_code == 404
            assert "X-Cache" not in response.headers

        assert app.state.calls == 2
        assert len(service.memory) == 0

    def test_non_json_responses_not_cached(self, service):
        app = build_app(service)
        client = TestClient(app)

        assert client.get("/api/plain").text == "plain text"
        assert client.get("/api/plain").text == "plain text"
        assert app.state.calls == 2

    def test_skip_cache_predicate(self, service):
        app = build_app(service, skip_cache=lambda request: "fresh" in request.query_params)
        client = TestClient(app)

        client.get("/api/stats?fresh=1")
        response = client.get("/api/stats?fresh=1")

        assert "X-Cache" not in response.headers
        assert app.state.calls == 2

    def test_paths_outside_prefixes_bypass_cache(self, service):
        app = build_app(service, paths=["/api"])
        client = TestClient(app)

        client.get("/health")
        response = client.get("/health")

        assert "X-Cache" not in response.headers
        assert app.state.calls == 2

    def test_if_none_match_returns_304(self, service):
        client = TestClient(build_app(service))
        etag = client.get("/api/stats").headers["ETag"]

        response = client.get("/api/stats", headers={"If-None-Match": etag})

        assert response.status_code == 304
        assert response.content == b""
        assert response.headers["ETag"] == etag
        assert response.headers["X-Cache"] == "HIT"

    def test_stale_etag_gets_full_response(self, service):
        client = TestClient(build_app(service))
        client.get("/api/stats")

        response = client.get("/api/stats", headers={"If-None-Match": '"stale"'})

        assert response.status_code == 200
        assert response.json()["calls"] == 1

    def test_expired_entry_refetched(self):
        clock_ms = [1_000]
        service = CacheService(
            store_factory=None,
            memory=MemoryCache(autostart=False, clock=lambda: clock_ms[0]),
        )
        app = build_app(service, ttl_seconds=1)
        client = TestClient(app)

        client.get("/api/stats")
        clock_ms[0] += 1_001
        response = client.get("/api/stats")

        assert response.headers["X-Cache"] == "MISS"
        assert app.state.calls == 2


def test_create_app_installs_response_cache(monkeypatch):
    monkeypatch.setattr(settings, "response_cache_enabled", True)
    monkeypatch.setattr(settings, "rate_limit_enabled", False)
    app = create_app()
    calls = []

    @app.get("/api/plans")
    async def plans():
        calls.append(1)
        return {"plans": ["pro"]}

    with TestClient(app) as client:
        first = client.get("/api/plans")
        second = client.get("/api/plans")
        health = client.get("/health")

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert len(calls) == 1
    assert "X-Cache" not in health.headers
    assert health.json()["components"]["response_cache"]["enabled"] is True
