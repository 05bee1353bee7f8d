"""
Structured JSON Logging Configuration for the identity verification API.

Provides JSON-formatted logs with:
- timestamp (ISO 8601)
- level
- message
- logger name
- Extra context (request_id, caller_id, session_id, latency_ms, etc.)

Identity numbers and image payloads must never reach a log record;
use mask_identity_number() when a log line needs to reference one.
"""
import logging
import json
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Set by RequestIDMiddleware; picked up by every log record of the request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

EXTRA_FIELDS = [
    "request_id",
    "caller_id",
    "session_id",
    "subject_id",
    "verification_type",
    "latency_ms",
    "status_code",
    "method",
    "path",
    "operation",
    "outcome",
]


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs JSON-structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add any extra fields passed via logging.info(..., extra={...})
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if "request_id" not in log_entry:
            request_id = request_id_var.get()
            if request_id:
                log_entry["request_id"] = request_id

        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, use JSON formatting; else use plain text
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create console handler
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def mask_identity_number(identity_number: Optional[str]) -> str:
    """
    Mask an identity number for logging, keeping the last 4 characters.

    Example:
        >>> mask_identity_number("11793253275")
        '*******3275'
    """
    if not identity_number:
        return ""
    visible = identity_number[-4:]
    return "*" * max(len(identity_number) - 4, 0) + visible


def log_execution_time(func):
    """
    Decorator to log function execution time.

    Logs at INFO level with function name and duration in milliseconds.
    Works with both synchronous and asynchronous functions.

    Usage:
        @log_execution_time
        def match_attributes(...):
            ...
    """
    import functools
    import time
    import asyncio

    logger = logging.getLogger(func.__module__)

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{func.__name__} completed in {elapsed_ms:.2f}ms",
                extra={"latency_ms": round(elapsed_ms, 2)}
            )

    @functools.wraps(func)
    async def async_wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{func.__name__} completed in {elapsed_ms:.2f}ms",
                extra={"latency_ms": round(elapsed_ms, 2)}
            )

    if asyncio.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper
