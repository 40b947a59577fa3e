"""
Structured logging with automatic trace context propagation.

Key Features:
- Standard logger.info() calls pick up run/node context automatically
- ContextVar-based propagation: every asyncio task spawned during a run
  inherits the run_id, and node tasks add their node_id
- Dual output modes: JSON for production, human-readable for development

Architecture:
    Graph.run() -> sets run_id once
        | (automatic propagation via ContextVar)
    Node.get_result() -> adds node_id for the duration of the invocation
        | (automatic propagation)
    Node callable -> logger.info("message") -> gets run_id + node_id
"""

import json
import logging
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# ANSI escape code pattern (matches \033[...m or \x1b[...m)
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Trace context (run_id, node_id, ...)
    - Custom fields from extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        context = trace_context.get() or {}

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }

        log_entry.update(context)

        event = getattr(record, "event", None)
        if event is not None:
            log_entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        latency_ms = getattr(record, "latency_ms", None)
        if latency_ms is not None:
            log_entry["latency_ms"] = latency_ms

        # An explicit extra wins over the ambient context
        node_id = getattr(record, "node_id", None)
        if node_id is not None:
            log_entry["node_id"] = node_id

        port = getattr(record, "port", None)
        if port is not None:
            log_entry["port"] = port

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a short [run | node] prefix.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string."""
        context = trace_context.get() or {}
        run_id = context.get("run_id", "")
        node_id = getattr(record, "node_id", None) or context.get("node_id", "")

        prefix_parts = []
        if run_id:
            prefix_parts.append(f"run:{run_id[:8]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure structured logging for the application.

    Call once at startup (CLI entry point, application main, test fixture).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Output format:
            - "json": Machine-parseable JSON (for production)
            - "human": Human-readable with colors (for development)
            - "auto": JSON if LOG_FORMAT=json or ENV=production, else human

    Examples:
        configure_logging(level="DEBUG", format="human")
        configure_logging(level="INFO", format="json")
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()

        if log_format_env == "json" or env == "production":
            format = "json"
        else:
            format = "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        # Common convention for disabling colors in third-party output
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """
    Set trace context for current execution.

    Context is stored in a ContextVar and propagates through async calls
    and into tasks created afterwards. Called by the framework:
    - Graph.run(): sets run_id
    - Node invocation: adds node_id

    Args:
        **kwargs: Context fields (run_id, node_id, ...)
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """
    Get current trace context.

    Returns:
        Dict with run_id, node_id, etc. Empty dict if no context set.
    """
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """
    Clear trace context.

    Useful between test runs; the framework itself relies on ContextVar
    scoping instead.
    """
    trace_context.set(None)


@contextmanager
def trace_scope(**kwargs: Any) -> Iterator[dict]:
    """
    Extend the trace context for the duration of a block.

    Example:
        with trace_scope(node_id="add"):
            logger.info("invoking")  # carries node_id=add
        # node_id no longer set here
    """
    current = trace_context.get() or {}
    token = trace_context.set({**current, **kwargs})
    try:
        yield get_trace_context()
    finally:
        trace_context.reset(token)
