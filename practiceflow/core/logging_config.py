"""
Structured Logging Configuration for PracticeFlow

Provides JSON-formatted logging for production with:
- Correlation ID tracking (HTTP request id, or the enrollment being ticked)
- Structured fields (timestamp, level, message, context)
- Configurable log levels
- Console and file handlers
"""

import logging
import json
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar
import os

# Correlation id shared by every record emitted in the current request/tick
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info', 'taskName',
])


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.

    Includes timestamp, level, logger, message, correlation_id (if set),
    exception text and any fields passed through ``extra=``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Format: [TIMESTAMP] LEVEL - logger - message (correlation_id)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        correlation_id = correlation_id_var.get()
        if correlation_id:
            base += f" ({correlation_id})"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSON formatter (production), else standard formatter
        log_file: Optional file path to write logs to

    Environment Variables:
        LOG_LEVEL: Override log level (default: INFO)
        JSON_LOGS: If "true", enable JSON logging
        LOG_FILE: File path for log output
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "level": level,
            "json_logs": json_logs,
            "log_file": log_file or "none"
        }
    )


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation id for the current context."""
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear the correlation id so it does not leak into the next request."""
    correlation_id_var.set(None)


def get_correlation_id() -> Optional[str]:
    """Return the current correlation id, if any."""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    """
    Temporarily bind a correlation id, restoring the previous one on exit.

    Example:
        with correlation_scope(f"enrollment:{enrollment_id}"):
            logger.info("Ticking")  # carries correlation_id=enrollment:42
    """
    token = correlation_id_var.set(correlation_id)
    try:
        yield
    finally:
        correlation_id_var.reset(token)
