"""Logging configuration for the rate limiting service.

Plain text, key=value structured, or JSON output selected by
``settings.log_format``. Rate limit decisions carry their namespace,
identifier and strategy as record attributes so they can be filtered in
a log aggregator.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from ratelimiting.app.core.config import settings

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    CONTEXT_FIELDS = [
        "namespace",     # Rate limit namespace (config key space)
        "identifier",    # Caller identifier (IP, IP+UA hash, user id)
        "strategy",      # fixed_window | sliding_window | token_bucket | leaky_bucket
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
        "retry_after",   # Seconds until a rejected caller may retry
    ]

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
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
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if key in self.CONTEXT_FIELDS:
                if value is not None:
                    log_data[key] = value
            else:
                extra[key] = value
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Fill in missing rate limit context fields so format strings never fail."""

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the ``logging.config.dictConfig`` dictionary from settings."""
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": (
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                " - namespace=%(namespace)s - identifier=%(identifier)s"
                " - strategy=%(strategy)s"
            )
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "ratelimiting.app.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "ratelimiting.app.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": default_formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "ratelimiting": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "ratelimiting") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    namespace: Optional[str] = None,
    identifier: Optional[str] = None,
    strategy: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a context dict for the ``extra=`` argument of logging calls.

    Example:
        >>> logger.info(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(namespace="auth_login", identifier="10.0.0.1"),
        ... )
    """
    context: Dict[str, Any] = {
        "namespace": namespace,
        "identifier": identifier,
        "strategy": strategy,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
