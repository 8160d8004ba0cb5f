"""Circuit breaker for calls to external services.

Tracks consecutive failures across calls and stops calling a dependency that
is currently down, so unrelated requests do not each burn through a full
retry budget against it.
"""

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from aias.app.core.config import settings
from aias.app.core.logging import get_logger
from aias.app.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass
class CircuitBreakerMetrics:
    """Snapshot of a breaker's counters."""

    state: str
    failures: int
    total_requests: int
    total_failures: int
    total_successes: int
    rejected: int
    last_failure_time: Optional[float]
    last_success_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CircuitBreaker:
    """Closed / open / half-open circuit breaker.

    - closed: calls pass; ``failure_threshold`` consecutive failures open it.
    - open: calls are rejected without running until ``reset_timeout``
      seconds have passed.
    - half-open: exactly one trial call runs. Success closes the circuit,
      failure opens it again and restarts the timeout.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Service name used in logs and errors
            failure_threshold: Consecutive failures before opening
            reset_timeout: Seconds to stay open before allowing a trial call
            clock: Monotonic time source in seconds
        """
        self.name = name
        self._failure_threshold = (
            failure_threshold if failure_threshold is not None else settings.circuit_failure_threshold
        )
        self._reset_timeout = (
            reset_timeout if reset_timeout is not None else settings.circuit_reset_timeout_seconds
        )
        if self._failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self._reset_timeout < 0:
            raise ValueError("reset_timeout must not be negative")
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._trial_in_flight = False

        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._rejected = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, transitioning to half-open if due."""
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self._reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker entering half-open state", extra={"service": self.name})
        return self._state

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until a trial call will be admitted (0 if not open)."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._reset_timeout - (self._clock() - self._opened_at))

    def _try_acquire(self) -> tuple[bool, bool]:
        """Return (admitted, is_trial) for a new call."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True, False
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True, True
        return False, False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    def record_success(self, trial: bool = True) -> None:
        """Record a successful call.

        Args:
            trial: False for a call admitted while the circuit was closed; such
                a call finishing during half-open leaves the state to the trial.
        """
        self._total_successes += 1
        self._last_success_time = time.time()
        if self._state == CircuitState.HALF_OPEN:
            if not trial:
                return
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
            logger.info("Circuit breaker closed - service recovered", extra={"service": self.name})
        self._failure_count = 0

    def record_failure(self, trial: bool = True) -> None:
        """Record a failed call; ``trial`` as for ``record_success``."""
        self._total_failures += 1
        self._last_failure_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            if not trial:
                return
            self._failure_count += 1
            self._open()
            logger.warning("Circuit breaker reopened - recovery failed", extra={"service": self.name})
            return

        self._failure_count += 1
        if self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
            self._open()
            logger.error(
                f"Circuit breaker opened after {self._failure_count} consecutive failures",
                extra={"service": self.name},
            )

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine function
            fallback: Called instead when the circuit rejects the call or the
                operation fails

        Raises:
            CircuitBreakerOpenError: If the circuit rejects the call and no
                fallback is given.
        """
        self._total_requests += 1

        admitted, is_trial = self._try_acquire()
        if not admitted:
            self._rejected += 1
            if fallback is not None:
                logger.warning("Circuit breaker is open, using fallback", extra={"service": self.name})
                return await fallback()
            raise CircuitBreakerOpenError(self.name, retry_after=self.retry_after())

        try:
            result = await operation()
        except Exception as e:
            self.record_failure(trial=is_trial)
            if fallback is not None:
                logger.warning(
                    f"Request failed, using fallback: {type(e).__name__}: {e}",
                    extra={"service": self.name},
                )
                return await fallback()
            raise
        finally:
            # A cancelled trial must not block the next one
            if is_trial:
                self._trial_in_flight = False

        self.record_success(trial=is_trial)
        return result

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        return CircuitBreakerMetrics(
            state=self.state.value,
            failures=self._failure_count,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            rejected=self._rejected,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
        )

    def reset(self) -> None:
        """Manually close the circuit and clear the failure count."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        logger.info("Circuit breaker manually reset", extra={"service": self.name})


class CircuitBreakerRegistry:
    """Named circuit breakers, one per external dependency."""

    def __init__(self) -> None:
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **config: Any) -> CircuitBreaker:
        """Get or create the breaker for ``name``.

        ``config`` only applies when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, **config)
            self._breakers[name] = breaker
        return breaker

    def get_all(self) -> Dict[str, CircuitBreaker]:
        return dict(self._breakers)

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.metrics.to_dict() for name, breaker in self._breakers.items()}

    def clear(self) -> None:
        self._breakers.clear()


circuit_breaker_registry = CircuitBreakerRegistry()


async def with_circuit_breaker(
    name: str,
    operation: Callable[[], Awaitable[T]],
    fallback: Optional[Callable[[], Awaitable[T]]] = None,
    **config: Any,
) -> T:
    """Run ``operation`` through the registry's breaker for ``name``.

    Example:
        >>> plans = await with_circuit_breaker("stripe", lambda: stripe.list_plans())
    """
    breaker = circuit_breaker_registry.get(name, **config)
    return await breaker.call(operation, fallback)
