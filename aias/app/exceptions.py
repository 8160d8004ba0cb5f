"""Custom exceptions for the platform's infrastructure helpers."""

from typing import Any


class AIASException(Exception):
    """Base class for platform exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Platform error"):
        self.message = message
        super().__init__(message)


class RemoteStoreError(AIASException):
    """Raised when the remote key-value store is unreachable or misbehaves.

    The rate limiter and cache service catch this and fall back to memory.
    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502

    def __init__(self, message: str = "Remote key-value store error", backend: str | None = None):
        self.backend = backend
        super().__init__(message)


class CircuitBreakerOpenError(AIASException):
    """Raised when a call is short-circuited by an open circuit breaker.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, name: str, retry_after: float | None = None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker is open for {name}")


class RateLimitExceededError(AIASException):
    """Raised by route handlers that prefer exceptions over result objects.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: Any, detail: str | None = None):
        self.result = result
        super().__init__(detail or "Rate limit exceeded. Please try again later.")

    def to_response(self) -> dict:
        return {
            "error": "rate_limit_exceeded",
            "message": self.message,
            "retry_after": getattr(self.result, "retry_after_seconds", None),
        }
