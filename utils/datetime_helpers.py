"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All BMS timestamp columns store timezone-naive UTC datetimes. These helpers keep
aware datetimes (API payloads, provider responses) from leaking into the models.
"""

from datetime import datetime, timezone
from typing import Optional, Union
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
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


def parse_datetime(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 string (``Z`` suffix allowed) or pass a datetime through,
    returning naive UTC.

    Raises:
        ValueError: if the string is not ISO-8601
    """
    if isinstance(value, datetime):
        return ensure_naive_datetime(value)

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_naive_datetime(datetime.fromisoformat(text))


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat()
