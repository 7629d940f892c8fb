"""Structured logging utilities for the transfer pipeline."""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

NOISY_LOGGERS = ("google", "google.auth", "grpc", "snowflake.connector", "urllib3", "botocore")

_current_transfer_id: ContextVar[str | None] = ContextVar("transfer_id", default=None)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    standard_attrs = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs", "pathname",
        "process", "processName", "relativeCreated", "stack_info",
        "exc_info", "exc_text", "thread", "threadName", "taskName",
        "message", "transfer_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if getattr(record, "transfer_id", None):
            log_data["transfer_id"] = record.transfer_id

        for key, value in record.__dict__.items():
            if key in self.standard_attrs or key.startswith("_"):
                continue
            if isinstance(value, datetime):
                log_data[key] = value.isoformat()
            else:
                try:
                    json.dumps(value)
                    log_data[key] = value
                except (TypeError, ValueError):
                    log_data[key] = str(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TransferIdFilter(logging.Filter):
    """Stamp the current transfer id on every log record.

    The id is held in a context variable, so transfers running side by side in one
    process each stamp their own. Worker threads see it when submitted under a copy
    of the submitting context.
    """

    @staticmethod
    def set_transfer_id(transfer_id: str | None) -> Token:
        return _current_transfer_id.set(transfer_id)

    @staticmethod
    def reset_transfer_id(token: Token) -> None:
        _current_transfer_id.reset(token)

    @staticmethod
    def get_transfer_id() -> str | None:
        return _current_transfer_id.get()

    @staticmethod
    def generate_transfer_id() -> str:
        return uuid.uuid4().hex[:12]

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "transfer_id", None):
            record.transfer_id = _current_transfer_id.get()
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level.upper())

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    handler.addFilter(TransferIdFilter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one named pipeline event (``session_created``, ``file_staged``...) with its fields."""
    logger.log(level, event, extra={"event": event, **fields})


@contextmanager
def log_operation(logger: logging.Logger, operation: str, **context: Any):
    """Context manager for logging operation start/end with timing."""
    start_time = perf_counter()
    logger.info(f"Starting {operation}", extra=context)

    try:
        yield
    except Exception as e:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.error(
            f"Failed {operation}",
            extra={**context, "duration_ms": duration_ms, "error": str(e)},
        )
        raise
    else:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.info(f"Completed {operation}", extra={**context, "duration_ms": duration_ms})
