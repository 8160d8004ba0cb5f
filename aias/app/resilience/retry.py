"""Retry mechanism with exponential backoff for calls to external services.

This module provides a configurable retry policy, a ``retry`` helper and a
decorator that implement exponential backoff for transient failures such as
network blips, timeouts and momentary provider rate limits.
"""

import asyncio
import dataclasses
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

from aias.app.core.config import settings
from aias.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

# Lower-cased message fragments that mark an error as transient
TRANSIENT_MESSAGE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
)

# Built-in transport failures that are always worth retrying
TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.NetworkError,
    httpx.TimeoutException,
    ConnectionError,
    TimeoutError,
)

# HTTP statuses worth retrying besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first call (default: 3)
        initial_delay_ms: Delay before the second attempt (default: 1000)
        max_delay_ms: Upper bound for any single delay (default: 10000)
        backoff_multiplier: Growth factor between delays (default: 2.0)
        retryable_errors: Extra exception types that trigger a retry
        on_retry: Observer called as ``on_retry(attempt, error)`` before each
            wait; coroutine functions are awaited

    Example:
        >>> policy = RetryPolicy(max_attempts=5, initial_delay_ms=200)
        >>> policy.calculate_delay_ms(attempt=3)  # Returns 800
    """

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10_000
    backoff_multiplier: float = 2.0
    retryable_errors: Tuple[Type[BaseException], ...] = ()
    on_retry: Optional[Callable[[int, BaseException], Any]] = None

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        self.retryable_errors = tuple(self.retryable_errors)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetryPolicy":
        """Build a policy from application settings, applying overrides."""
        values: dict[str, Any] = {
            "max_attempts": settings.retry_max_attempts,
            "initial_delay_ms": settings.retry_initial_delay_ms,
            "max_delay_ms": settings.retry_max_delay_ms,
            "backoff_multiplier": settings.retry_backoff_multiplier,
        }
        values.update(overrides)
        return cls(**values)

    def calculate_delay_ms(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Uses exponential backoff:
        delay = min(initial_delay_ms * backoff_multiplier ^ (attempt - 1), max_delay_ms)

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds
        """
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_ms)

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if an exception should trigger a retry.

        Types listed in ``retryable_errors`` always retry. Otherwise an
        HTTPStatusError retries only for 5xx, 408 and 429; other client
        errors will not succeed on a second try.
        """
        if self.retryable_errors and isinstance(exception, self.retryable_errors):
            return True

        if isinstance(exception, httpx.HTTPStatusError):
            status = exception.response.status_code
            return status >= 500 or status in RETRYABLE_STATUS_CODES

        if isinstance(exception, TRANSIENT_EXCEPTIONS):
            return True

        message = str(exception).lower()
        return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


async def _notify(policy: RetryPolicy, attempt: int, error: BaseException, name: str) -> None:
    if policy.on_retry is None:
        return
    try:
        outcome = policy.on_retry(attempt, error)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as callback_error:
        logger.warning(
            f"on_retry callback failed for {name}: {type(callback_error).__name__}: {callback_error}"
        )


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    **overrides: Any,
) -> T:
    """Run ``operation`` and retry transient failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine function to call
        policy: Retry configuration; settings defaults are used if omitted
        **overrides: Field overrides applied on top of ``policy``

    Returns:
        The first successful result.

    Raises:
        Exception: The error from the final attempt, unchanged, once retries
            are exhausted or as soon as a non-retryable error occurs.

    Example:
        >>> data = await retry(lambda: client.get_json(url), max_attempts=5)
    """
    retry_policy = policy or RetryPolicy.from_settings()
    if overrides:
        retry_policy = dataclasses.replace(retry_policy, **overrides)

    name = getattr(operation, "__name__", repr(operation))

    for attempt in range(1, retry_policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not retry_policy.is_retryable(e):
                logger.debug(f"Non-retryable exception in {name}: {type(e).__name__}: {e}")
                raise

            if attempt >= retry_policy.max_attempts:
                logger.warning(
                    f"Max attempts ({retry_policy.max_attempts}) exceeded for {name}: "
                    f"{type(e).__name__}: {e}"
                )
                raise

            await _notify(retry_policy, attempt, e, name)

            delay_ms = retry_policy.calculate_delay_ms(attempt)
            logger.warning(
                f"Retry {attempt}/{retry_policy.max_attempts - 1} for {name} "
                f"after {type(e).__name__}: {e}. Waiting {delay_ms / 1000:.2f}s..."
            )
            await asyncio.sleep(delay_ms / 1000)

    # max_attempts >= 1 guarantees the loop returns or raises
    raise RuntimeError("retry loop exited without a result")


def with_retry(policy: Optional[RetryPolicy] = None) -> Callable[[F], F]:
    """Decorator that adds retry logic with exponential backoff.

    Example:
        >>> @with_retry(RetryPolicy(max_attempts=4))
        ... async def fetch_invoice(invoice_id):
        ...     return await billing.get(invoice_id)
    """
    retry_policy = policy or RetryPolicy.from_settings()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async def call() -> Any:
                return await func(*args, **kwargs)

            call.__name__ = func.__name__
            return await retry(call, retry_policy)

        return wrapper  # type: ignore

    return decorator
