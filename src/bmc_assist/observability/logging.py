"""Structured logging configuration for BMC Assist.

Provides JSON-formatted structured logging with contextual fields
(request_id, client_key, user_id) via contextvars.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variables for request-scoped logging fields
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_client_key: ContextVar[Optional[str]] = ContextVar("client_key", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

_CONTEXT_FIELDS = (
    ("request_id", "req", _request_id),
    ("client_key", "client", _client_key),
    ("user_id", "user", _user_id),
)


def set_log_context(
    request_id: Optional[str] = None,
    client_key: Optional[str] = None,
    user_id: Optional[str] = None,
):
    """Set contextual logging fields for the current async context."""
    if request_id is not None:
        _request_id.set(request_id)
    if client_key is not None:
        _client_key.set(client_key)
    if user_id is not None:
        _user_id.set(user_id)


def clear_log_context():
    """Clear all contextual logging fields."""
    _request_id.set(None)
    _client_key.set(None)
    _user_id.set(None)


def get_log_context() -> dict:
    return {name: var.get() for name, _, var in _CONTEXT_FIELDS if var.get()}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(get_log_context())

        # Add exception info if present
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter with context fields for development."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"[{self.formatTime(record, self.datefmt)}]",
            f"{record.levelname:8s}",
            f"{record.name}:",
            record.getMessage(),
        ]

        ctx_parts = [
            f"{short}={var.get()}" for _, short, var in _CONTEXT_FIELDS if var.get()
        ]
        if ctx_parts:
            parts.append(f"[{', '.join(ctx_parts)}]")

        msg = " ".join(parts)

        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(environment: str = "development", log_level: str = "INFO"):
    """Configure structured logging for the application.

    Args:
        environment: "production" for JSON output, anything else for human-readable.
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    root_logger.addHandler(handler)

    # Quiet noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
