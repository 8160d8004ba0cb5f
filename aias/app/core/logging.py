"""Logging setup for the platform.

Standard library ``logging`` configured through dictConfig. Components pass
context such as the rate limit backend or circuit name via ``extra`` and the
selected formatter (plain text, structured text or JSON) renders it.
"""

import json
import logging
import logging.config
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aias.app.core.config import settings


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Known context fields are promoted to top-level keys; any other ``extra``
    values are grouped under ``"extra"``.
    """

    CONTEXT_FIELDS = (
        "request_id",
        "path",          # Request path or rate limit namespace
        "identifier",    # Caller identifier (hashed key or IP)
        "backend",       # memory, redis, rest, fail-open
        "service",       # Circuit breaker or dependency name
        "status_code",
        "duration_ms",
    )

    # Attributes every LogRecord carries
    _RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in self.CONTEXT_FIELDS:
                if value is not None:
                    log_data[key] = value
            elif key not in self._RECORD_ATTRS:
                extra[key] = value
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Fill in context fields missing from a record.

    Records logged without the matching ``extra`` keys would otherwise break
    the ``structured`` format string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in JSONFormatter.CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "structured": (
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        " - path=%(path)s - identifier=%(identifier)s"
        " - backend=%(backend)s - service=%(service)s"
    ),
}

# Client libraries whose per-request logs drown out fail-over warnings
_NOISY_LOGGERS = ("httpx", "httpcore", "redis", "uvicorn.access")


def _formatter_config(log_format: str) -> Dict[str, Any]:
    if log_format == "json":
        return {"()": "aias.app.core.logging.JSONFormatter"}
    return {"format": _FORMATS.get(log_format, _FORMATS["text"])}


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig for the current settings.

    ``settings.log_format`` picks one of ``text``, ``structured`` or
    ``json``; unknown values fall back to ``text``. Everything goes to stdout
    through a single handler carrying ``ContextFilter``.
    """
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()
    formatter = log_format if log_format in ("structured", "json") else "standard"

    loggers: Dict[str, Any] = {
        "aias": {"level": log_level, "handlers": ["console"], "propagate": False},
    }
    for name in _NOISY_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": _formatter_config("text"),
            "structured": _formatter_config("structured"),
            formatter: _formatter_config(log_format),
        },
        "filters": {"context": {"()": "aias.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": "ext://sys.stdout",
                "filters": ["context"],
            },
        },
        "loggers": loggers,
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str = "aias") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    path: Optional[str] = None,
    identifier: Optional[str] = None,
    backend: Optional[str] = None,
    service: Optional[str] = None,
    **extra,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    None values are dropped so they do not shadow the filter's defaults.

    Example:
        >>> logger.warning(
        ...     "Remote store failed",
        ...     extra=get_log_context(path="/api/test", backend="rest"),
        ... )
    """
    context = dict(
        request_id=request_id,
        path=path,
        identifier=identifier,
        backend=backend,
        service=service,
        **extra,
    )
    return {k: v for k, v in context.items() if v is not None}
