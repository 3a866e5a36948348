"""Logging configuration for the Mobius calendar service.

Two formatters are available: a one-line colored format for development and
JSON for production. Call sites attach context through ``extra={...}``
(``team_id``, ``host_id``, ``email`` and so on); both formatters render it.
"""

import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

from .config import get_settings_instance

_LOGGING_CONFIGURED = False

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"

# Loggers that are too chatty at the service's own level
_SQL_LOGGERS = ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.orm")
_CLIENT_LOGGERS = ("httpx", "httpcore", "google.auth", "google.auth.transport", "urllib3")

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "message",
        "asctime",
    }
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, UTC)


class ColoredFormatter(logging.Formatter):
    """``<time> - <LEVEL> - <logger> - <message> | key=value ...``"""

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def _paint(self, text: str, levelname: str) -> str:
        if not self.use_colors:
            return text
        return f"{_LEVEL_COLORS.get(levelname, '')}{text}{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            _timestamp(record).strftime("%Y-%m-%d %H:%M:%S"),
            self._paint(record.levelname, record.levelname),
            record.name,
            record.getMessage(),
        ]
        line = " - ".join(parts)

        # Only short scalars; structured values belong in the JSON format
        context = [
            f"{key}={value}"
            for key, value in _extra_fields(record).items()
            if isinstance(value, (str, int, float, bool)) and len(str(value)) < 100
        ]
        if context:
            line = f"{line} | {' '.join(context)}"

        if record.exc_info:
            line += "\n" + self._paint("Exception:", record.levelname) + "\n"
            line += "".join(traceback.format_exception(*record.exc_info))
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extras merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["exception"] = {
                "type": getattr(exc_type, "__name__", "Unknown"),
                "message": str(exc_value),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        payload.update(_extra_fields(record))
        return json.dumps(payload, default=str)


def setup_logging() -> None:
    """Install the configured formatter on the root logger (once per process)."""
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if _LOGGING_CONFIGURED:
        return

    settings = get_settings_instance()
    level = getattr(logging, settings.log_level, logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ColoredFormatter(use_colors=settings.environment == "development")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _SQL_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _LOGGING_CONFIGURED = True
    logging.getLogger("mobius").info(
        "Logging configured",
        extra={"log_level": settings.log_level, "log_format": settings.log_format, "environment": settings.environment},
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under ``mobius``."""
    if name == "mobius" or name.startswith("mobius."):
        return logging.getLogger(name)
    return logging.getLogger(f"mobius.{name}")
