"""
Utility functions for the payment resilience layer.
"""

# Datetime utilities
from .datetime_utils import ensure_timezone_aware, format_iso_datetime, get_current_datetime, is_older_than

# Logging
from .logging import configure_logging, get_context_logger, with_context

__all__ = [
    # Datetime
    "ensure_timezone_aware",
    "format_iso_datetime",
    "get_current_datetime",
    "is_older_than",

    # Logging
    "configure_logging",
    "get_context_logger",
    "with_context",
]
