"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All DateTime columns in models.py are timezone-naive and hold UTC values.
Callers may pass aware datetimes (e.g. the scheduler's `now`); they are
normalized here before being compared with stored values.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_days(dt: datetime, days: int) -> datetime:
    return ensure_naive_datetime(dt) + timedelta(days=days)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize for audit snapshots; naive values are treated as UTC"""
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"
