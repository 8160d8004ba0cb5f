"""
Pytest configuration shared by the test suite.

Process-wide singletons (limiter, caches, key-value stores, circuit breaker
registry) are dropped around every test so state never leaks between tests,
and remote stores are disabled unless a test opts in.
"""

import pytest

from aias.app.core import cache as cache_module
from aias.app.core import kv_store as kv_store_module
from aias.app.core.config import settings
from aias.app.middleware.rate_limit import reset_rate_limiter
from aias.app.resilience.circuit_breaker import circuit_breaker_registry
from aias.app.services.cache_service import reset_cache_service


def _drop_singletons() -> None:
    reset_rate_limiter()
    reset_cache_service()
    circuit_breaker_registry.clear()
    kv_store_module._stores.clear()
    cache_module._memory_cache = None
    cache_module._inflight_locks.clear()


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch):
    """Run every test against in-memory backends and fresh singletons."""
    monkeypatch.setattr(settings, "redis_enabled", False)
    monkeypatch.setattr(settings, "kv_rest_api_url", "")
    monkeypatch.setattr(settings, "kv_rest_api_token", "")
    _drop_singletons()
    yield
    _drop_singletons()
