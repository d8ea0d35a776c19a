"""Structured JSON logging with import context propagation."""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog

# Context variables bound to every event while set
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
import_id_var: ContextVar[str] = ContextVar("import_id", default="")
state_var: ContextVar[str] = ContextVar("state", default="")


def get_correlation_id() -> str:
    """Get the current correlation ID, generating one if not set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(cid)


def set_import_context(import_id: str, state: str = "") -> None:
    """Bind the import being processed to subsequent log events."""
    import_id_var.set(import_id)
    state_var.set(state)


def clear_import_context() -> None:
    import_id_var.set("")
    state_var.set("")


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add correlation ID and import context to log events."""
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid

    import_id = import_id_var.get()
    if import_id:
        event_dict.setdefault("import_id", import_id)

    state = state_var.get()
    if state:
        event_dict.setdefault("state", state)

    return event_dict


def add_timestamp(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add ISO format timestamp to log events."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    level: str = "info",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """
    Configure structured logging for the importer.

    Args:
        level: Log level (debug, info, warn, error)
        format_type: Output format ('json' or 'text')
        stream: Output stream (default: sys.stderr)
    """
    if stream is None:
        stream = sys.stderr

    level_map = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warn": logging.WARNING,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }
    log_level = level_map.get(level.lower(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=log_level,
    )

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        add_timestamp,
        add_context_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(stream),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Optional logger name for context

    Returns:
        Configured structlog logger
    """
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


def log_extraction_summary(
    import_id: str,
    driver: str,
    rows: int,
    failed: int,
    duration_seconds: float,
) -> None:
    """Log the outcome of a finished extraction."""
    logger = get_logger("extraction")
    logger.info(
        "extraction_summary",
        import_id=import_id,
        driver=driver,
        rows=rows,
        failed=failed,
        duration_seconds=round(duration_seconds, 3),
    )


# Initialize with defaults on import
configure_logging()
