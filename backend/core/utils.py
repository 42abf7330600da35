"""
Utility functions for the clinic workflow engine.

Includes:
- Epoch-millisecond clock helpers
- Pagination helpers
"""

import time
from datetime import datetime, timezone
from typing import Optional

from core.constants import MS_PER_DAY


def now_ms() -> int:
    """
    Get the current time as epoch milliseconds.

    All engine timestamps (enrollment scheduling, log times) use this
    representation so they compare without timezone handling.

    Returns:
        Milliseconds since the Unix epoch
    """
    return int(time.time() * 1000)


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def days_ago_ms(days: float, now: Optional[int] = None) -> int:
    """Epoch milliseconds for `days` days before `now`."""
    return (now if now is not None else now_ms()) - int(days * MS_PER_DAY)


def paginate(
    items: list,
    total: int,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """
    Helper to create paginated response.

    Args:
        items: List of items for current page
        total: Total number of items across all pages
        page: Current page number (1-indexed)
        per_page: Number of items per page

    Returns:
        Dictionary with pagination metadata
    """
    total_pages = (total + per_page - 1) // per_page
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page
