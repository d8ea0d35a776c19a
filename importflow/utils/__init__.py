"""Utility modules for importflow."""

from importflow.utils.cache import TTLCache
from importflow.utils.logging import (
    configure_logging,
    get_correlation_id,
    get_logger,
    log_extraction_summary,
    set_correlation_id,
    set_import_context,
)
from importflow.utils.timeutil import parse_timestamp, to_iso, utcnow

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
    "set_import_context",
    "log_extraction_summary",
    # Cache
    "TTLCache",
    # Time
    "utcnow",
    "to_iso",
    "parse_timestamp",
]
