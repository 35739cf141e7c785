# SPDX-License-Identifier: Apache-2.0
"""
Logging configuration for kvsession.

This module provides centralized logging configuration with support for:
- Standard logging with configurable levels
- Structured JSON logging (optional)
- Session context tracking
- Consistent formatting across all modules
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variable for session label tracking
_session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


class SessionContextFilter(logging.Filter):
    """
    Add session_id to log records.

    This filter adds the current session label (if set) to all log records,
    so cache decisions of one conversation can be correlated.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Add session_id attribute to log record."""
        record.session_id = _session_id.get() or "-"
        return True


class ColoredFormatter(logging.Formatter):
    """
    Colored log formatter for terminal output.

    Uses ANSI color codes to highlight different log levels.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with colors."""
        color = self.COLORS.get(record.levelno, "")
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs logs as JSON objects for easy parsing by log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        session_id = getattr(record, "session_id", None)
        if session_id and session_id != "-":
            log_data["session_id"] = session_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key in ["cursor", "tokens", "discarded"]:
            if hasattr(record, key) and key not in log_data:
                log_data[key] = getattr(record, key)

        return json.dumps(log_data)


def get_session_id() -> Optional[str]:
    """Get the current session label from context."""
    return _session_id.get()


def set_session_id(session_id: Optional[str]) -> None:
    """Set the current session label in context."""
    _session_id.set(session_id)


def configure_logging(
    level: str = "INFO",
    format_style: str = "standard",
    include_session_id: bool = True,
    colored: bool = True,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_style: "standard" for plain text, "json" for structured JSON.
        include_session_id: Whether to include session_id in log format.
        colored: Whether to use colored output (only for standard format).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if include_session_id:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - [%(session_id)s] - %(message)s"
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    if format_style == "json":
        formatter = JsonFormatter(format_str)
    elif colored and sys.stderr.isatty():
        formatter = ColoredFormatter(format_str)
    else:
        formatter = logging.Formatter(format_str)

    handler.setFormatter(formatter)

    if include_session_id:
        handler.addFilter(SessionContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    logging.getLogger("kvsession").setLevel(log_level)

    # mlx-lm pulls in huggingface_hub for model resolution
    logging.getLogger("huggingface_hub").setLevel(max(log_level, logging.WARNING))


class SessionLogContext:
    """
    Context manager for session-scoped logging.

    Usage:
        with SessionLogContext(session_id="chat-1"):
            logger.info("Processing prompt")
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.previous_id: Optional[str] = None

    def __enter__(self) -> "SessionLogContext":
        self.previous_id = _session_id.get()
        _session_id.set(self.session_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _session_id.set(self.previous_id)
