from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_path_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]
    return [p.strip() for p in str(raw).split(",") if p.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Absence of remote store settings is not an error: the rate limiter and
    cache service then run purely in memory.
    """

    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings (fixed window)
    rate_limit_enabled: bool = True
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 60
    rate_limit_sweep_probability: float = 0.01
    rate_limit_exclude_paths: Annotated[list[str], NoDecode] = [
        "/health",
        "/health/circuits",
    ]

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # REST key-value store (Upstash / Vercel KV compatible, optional)
    kv_rest_api_url: str = Field(default="", validation_alias="KV_REST_API_URL")
    kv_rest_api_token: str = Field(default="", validation_alias="KV_REST_API_TOKEN")
    kv_timeout_seconds: float = 5.0

    # Cache settings
    cache_default_ttl: int = 300  # 5 minutes
    cache_sweep_interval_seconds: float = 300.0
    cache_key_prefix: str = "cache:"

    # HTTP response caching for GET routes
    response_cache_enabled: bool = False
    response_cache_ttl_seconds: int = 300
    response_cache_paths: Annotated[list[str], NoDecode] = ["/api"]
    response_cache_vary_headers: Annotated[list[str], NoDecode] = []

    # Retry settings
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 10_000
    retry_backoff_multiplier: float = 2.0

    # Circuit breaker settings
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_seconds: float = 30.0

    @property
    def kv_rest_configured(self) -> bool:
        """True when both the REST endpoint and its token are present."""
        return bool(self.kv_rest_api_url.strip() and self.kv_rest_api_token.strip())

    @field_validator(
        "rate_limit_exclude_paths",
        "response_cache_paths",
        "response_cache_vary_headers",
        mode="before",
    )
    @classmethod
    def decode_path_lists(cls, v: Any) -> list[str]:
        return _parse_path_list(v)

    @field_validator(
        "rate_limit_window_ms",
        "rate_limit_max_requests",
        "retry_max_attempts",
        "circuit_failure_threshold",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counters and windows are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("rate_limit_sweep_probability")
    @classmethod
    def validate_probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("rate_limit_sweep_probability must be between 0 and 1")
        return v

    @field_validator(
        "retry_initial_delay_ms",
        "retry_max_delay_ms",
        "cache_default_ttl",
        "response_cache_ttl_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("retry_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("retry_backoff_multiplier must be at least 1")
        return v

    @field_validator(
        "kv_timeout_seconds",
        "cache_sweep_interval_seconds",
        "circuit_reset_timeout_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate timeouts and intervals are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return settings
