"""Structured logging configuration.

Standard library logging wired through ``dictConfig``, with an optional JSON
formatter for log aggregation and a filter that guarantees the request
context attributes exist on every record.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fiesta.app.core.config import settings

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    }
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs one JSON object per record with the standard fields, the known
    request context fields, and any other ``extra=`` values nested under
    ``"extra"``.
    """

    CONTEXT_FIELDS = [
        "request_id",    # X-Request-ID of the inbound call, if any
        "client_key",    # rate-limit identity of the caller
        "provider",      # backend name (openrouter, gemini, mock, ...)
        "model",         # model id requested from the backend
        "used_key_type", # user | shared | none
        "path",
        "method",
        "status_code",
        "duration_ms",
    ]

    def __init__(self, fields: Optional[list] = None, datefmt: Optional[str] = None):
        super().__init__(datefmt=datefmt)
        self.fields = fields or self.CONTEXT_FIELDS

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

        for field in self.fields:
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in self.fields
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Adds default values for the request context fields.

    Lets format strings reference ``%(provider)s`` and friends without
    failing on records logged outside a request.
    """

    CONTEXT_DEFAULTS = {
        "request_id": None,
        "client_key": None,
        "provider": None,
        "model": None,
        "used_key_type": None,
        "path": None,
        "method": None,
        "status_code": None,
        "duration_ms": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - request_id=%(request_id)s - client_key=%(client_key)s - provider=%(provider)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "fiesta.app.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "fiesta.app.core.logging.ContextFilter"},
        },
        "handlers": handlers,
        "loggers": {
            "fiesta": {
                "level": log_level,
                "handlers": ["console", "error_console"],
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
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = "fiesta") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    client_key: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a context dictionary for the ``extra=`` parameter of log calls.

    None values are dropped so they do not shadow the filter defaults.

    Example:
        >>> logger.info(
        ...     "Call completed",
        ...     extra=get_log_context(provider="openrouter", duration_ms=812.4)
        ... )
    """
    context = {
        "request_id": request_id,
        "client_key": client_key,
        "provider": provider,
        "model": model,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
