"""
Datetime utility functions

All timestamps inside the engine are timezone-aware UTC. Values coming from
storage or from extraction payloads are coerced here.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)

SECONDS_PER_WEEK = 7 * 24 * 3600
DAYS_PER_YEAR = 365.25


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def to_utc(value) -> Optional[datetime]:
    """
    Coerce a stored or user supplied timestamp to aware UTC.

    Handles multiple cases:
    - None -> None
    - aware datetime -> converted to UTC
    - naive datetime -> assumed UTC
    - ISO string (with or without trailing Z) -> parsed
    - Other -> None with warning

    Args:
        value: datetime, ISO string, or None

    Returns:
        Aware UTC datetime or None
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, str):
        try:
            return to_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except ValueError as e:
            logger.warning(f"Failed to parse datetime string '{value}': {e}")
            return None

    logger.warning(f"Cannot convert {type(value)} to datetime: {value}")
    return None


def weeks_between(earlier: Optional[datetime], later: datetime) -> float:
    """Fractional weeks from earlier to later (0 when earlier is unknown or in the future)"""
    if earlier is None:
        return 0.0
    return max(0.0, (later - earlier).total_seconds() / SECONDS_PER_WEEK)


def days_between(earlier: Optional[datetime], later: datetime) -> float:
    if earlier is None:
        return 0.0
    return max(0.0, (later - earlier).total_seconds() / 86400)


def years_between(earlier: Optional[datetime], later: datetime) -> float:
    return days_between(earlier, later) / DAYS_PER_YEAR
