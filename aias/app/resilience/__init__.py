"""Resilience helpers for calls to external services.

This package provides:
- Retry with exponential backoff for transient failures
- Named circuit breakers with a shared registry
"""

from aias.app.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerMetrics,
    CircuitBreakerRegistry,
    CircuitState,
    circuit_breaker_registry,
    with_circuit_breaker,
)
from aias.app.resilience.retry import RetryPolicy, retry, with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitState",
    "circuit_breaker_registry",
    "with_circuit_breaker",
    "RetryPolicy",
    "retry",
    "with_retry",
]
