# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Structured logging configuration for Parley.

Provides:
- JSON formatter for production (machine-parseable)
- Standard formatter for development (human-readable)
- Correlation IDs tying together the log lines of one operation
- Operation logging with sensitive fields (message content, credentials,
  search queries) redacted
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from .exceptions import ParleyException

# Context variable for correlation ID (thread/async-safe)
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Get the current correlation ID, or None if not set."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context.

    Args:
        correlation_id: The correlation ID to set, or None to clear.
    """
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    """Generate a new unique correlation ID."""
    return str(uuid.uuid4())


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
) -> Generator[str, None, None]:
    """Context manager for correlation ID scope.

    Args:
        correlation_id: Optional correlation ID to use. If None, keeps the
            enclosing one or generates a new one.

    Yields:
        The correlation ID being used.

    Example:
        with correlation_context() as cid:
            logger.info("Joining group")  # Will include cid
    """
    cid = correlation_id or get_correlation_id() or generate_correlation_id()
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments.

    Includes correlation ID when present in context.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        # Add source location for errors
        if record.levelno >= logging.WARNING:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Standard log formatter for development.

    Human-readable format with colors for terminal output.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    CORRELATION_COLOR = "\033[90m"  # Gray

    def __init__(self, use_colors: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers see the untouched record
        record = logging.makeLogRecord(record.__dict__)

        correlation_id = get_correlation_id()
        if correlation_id:
            short_cid = correlation_id[:8]
            if self.use_colors:
                cid_str = f"{self.CORRELATION_COLOR}[{short_cid}]{self.RESET} "
            else:
                cid_str = f"[{short_cid}] "
            record.msg = cid_str + str(record.msg)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            record.levelname = f"{color}{record.levelname}{self.RESET}"

        return super().format(record)


def configure_logging(
    level: str | int | None = None,
    json_format: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Configure logging for Parley.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); defaults to
            PARLEY_LOG_LEVEL.
        json_format: Use JSON format (auto-detect if None)
        log_file: Optional file to write logs to; defaults to PARLEY_LOG_FILE.
    """
    from .config import get_config

    config = get_config()

    if level is None:
        level = config.log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        format_env = config.log_format.lower()
        if format_env == "json":
            json_format = True
        elif format_env == "text":
            json_format = False
        else:
            # Auto-detect: use JSON if not in a terminal
            json_format = not sys.stderr.isatty()

    log_file = config.log_file if log_file is None else log_file

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        # Always use JSON for file output
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("psycopg2").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


class OperationLogger:
    """Logger for core operations.

    Logs operation calls with sanitized arguments so message bodies,
    credentials and search terms never reach the logs.
    """

    SENSITIVE_PARAMS = {
        "content",
        "credential",
        "password",
        "query",
        "plaintext",
        "secret",
        "token",
    }

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("parley.operations")

    def log_call(self, operation: str, arguments: dict[str, Any], level: int = logging.DEBUG) -> None:
        sanitized = self._sanitize(arguments)
        self.logger.log(
            level,
            f"Operation call: {operation}",
            extra={"extra_data": {"operation": operation, "arguments": sanitized}},
        )

    def log_result(
        self,
        operation: str,
        success: bool,
        duration_ms: float | None = None,
        error: ParleyException | None = None,
        level: int = logging.DEBUG,
    ) -> None:
        """Log an operation outcome.

        Args:
            operation: Name of the operation
            success: Whether the call succeeded
            duration_ms: Call duration in milliseconds
            error: The typed failure, when the call failed with one
            level: Log level
        """
        status = "success" if success else "failure"
        msg = f"Operation result: {operation} -> {status}"
        if error is not None:
            msg += f" [{error.kind.value}]"
        if duration_ms is not None:
            msg += f" ({duration_ms:.1f}ms)"

        extra: dict[str, Any] = {
            "operation": operation,
            "success": success,
            "duration_ms": duration_ms,
        }
        if error is not None:
            extra["error"] = error.to_dict()

        self.logger.log(level, msg, extra={"extra_data": extra})

    def _sanitize(self, data: Any) -> Any:
        """Recursively redact sensitive values."""
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if key.lower() in self.SENSITIVE_PARAMS:
                    result[key] = "[REDACTED]"
                else:
                    result[key] = self._sanitize(value)
            return result
        elif isinstance(data, (list, tuple)):
            return [self._sanitize(item) for item in data]
        elif isinstance(data, str) and len(data) > 200:
            return data[:200] + "..."
        else:
            return data


# Default operation logger
operation_logger = OperationLogger()


@contextmanager
def operation_scope(operation: str, **arguments: Any) -> Generator[str, None, None]:
    """Wrap one core operation with correlation and outcome logging.

    Typed failures are logged at DEBUG (they are ordinary business outcomes);
    anything else is logged at ERROR with its traceback. The exception is
    always re-raised.
    """
    with correlation_context() as cid:
        operation_logger.log_call(operation, arguments)
        started = time.perf_counter()
        try:
            yield cid
        except ParleyException as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            operation_logger.log_result(operation, False, duration_ms, error=exc)
            raise
        except Exception:
            duration_ms = (time.perf_counter() - started) * 1000
            operation_logger.log_result(operation, False, duration_ms, level=logging.ERROR)
            operation_logger.logger.exception("Unexpected failure in %s", operation)
            raise
        duration_ms = (time.perf_counter() - started) * 1000
        operation_logger.log_result(operation, True, duration_ms)
