"""
Datetime utilities for the payment resilience layer.

All persisted timestamps are UTC. Some stores (SQLite in particular) hand
back naive datetimes, so everything read from the database goes through
ensure_timezone_aware before it is compared.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional
import logging

logger = logging.getLogger("payment_resilience.utils.datetime")


def ensure_timezone_aware(
    dt: Optional[datetime],
    default_timezone: timezone = timezone.utc,
    field_name: Optional[str] = None
) -> Optional[datetime]:
    """
    Ensure a datetime object has timezone information.

    Naive datetimes are assumed to be in default_timezone (UTC).

    Args:
        dt: Datetime object to ensure has timezone info
        default_timezone: Timezone to use if dt is naive (default: UTC)
        field_name: Optional field name for logging context

    Returns:
        Timezone-aware datetime object or None
    """
    if dt is None:
        return None

    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        field_info = f" for {field_name}" if field_name else ""
        logger.debug(f"Converting naive datetime{field_info} to {default_timezone.tzname(None)}")
        return dt.replace(tzinfo=default_timezone)

    return dt


def format_iso_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO 8601 string, or None."""
    if dt is None:
        return None
    return ensure_timezone_aware(dt).isoformat()


def get_current_datetime() -> datetime:
    """
    Get the current datetime with UTC timezone.

    Returns:
        Current timezone-aware datetime
    """
    return datetime.now(timezone.utc)


def is_older_than(
    dt: Optional[datetime],
    max_age: timedelta,
    reference_time: Optional[datetime] = None
) -> bool:
    """
    Check whether dt lies further than max_age in the past.

    A missing timestamp counts as old so that records with broken
    bookkeeping are never held forever.
    """
    if dt is None:
        return True

    if reference_time is None:
        reference_time = get_current_datetime()

    age = ensure_timezone_aware(reference_time) - ensure_timezone_aware(dt)
    return age > max_age
