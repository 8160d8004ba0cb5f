"""Rate limiting data models.

This module contains dataclasses for rate limit configuration, stored state
and check results. Timestamps are epoch milliseconds.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed window limit: ``max_requests`` per ``window_ms`` milliseconds."""
    window_ms: int
    max_requests: int

    def __post_init__(self) -> None:
        _positive_int("window_ms", self.window_ms)
        _positive_int("max_requests", self.max_requests)

    @classmethod
    def coerce(cls, value: "RateLimitConfig | Mapping[str, Any]") -> "RateLimitConfig":
        """Accept a config object or a mapping using snake or camel case keys."""
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            window = value.get("window_ms", value.get("windowMs"))
            max_requests = value.get("max_requests", value.get("maxRequests"))
            return cls(window_ms=window, max_requests=max_requests)
        raise ValueError(f"Unsupported rate limit config: {value!r}")


@dataclass
class RateLimitEntry:
    """Per-key window state."""
    count: int
    reset_time: int

    def is_expired(self, now: int) -> bool:
        return now > self.reset_time

    def to_dict(self) -> dict:
        """Convert to the JSON shape stored in remote stores."""
        return {"count": self.count, "resetTime": self.reset_time}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RateLimitEntry"]:
        """Parse stored JSON, returning None for anything malformed."""
        if not isinstance(data, dict):
            return None
        count = data.get("count")
        reset_time = data.get("resetTime")
        if isinstance(count, bool) or isinstance(reset_time, bool):
            return None
        if not isinstance(count, int) or not isinstance(reset_time, (int, float)):
            return None
        return cls(count=count, reset_time=int(reset_time))


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int
    limit: Optional[int] = None
    backend: str = "memory"
    checked_at: Optional[int] = None  # limiter clock at check time

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds from the check until the window resets; 0 when allowed.

        Falls back to the wall clock for results built without ``checked_at``.
        """
        if self.allowed:
            return 0
        now = self.checked_at if self.checked_at is not None else time.time() * 1000
        return max(1, math.ceil((self.reset_time - now) / 1000))
