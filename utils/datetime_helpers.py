"""
Datetime helper utilities to ensure consistent timezone handling across the engine.

CRITICAL: every DateTime column is timezone-naive and holds UTC.
Feeds from the two platforms and the receipt parser may hand back aware or
platform-local values; they are normalized here before reaching the database.
"""

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo
import logging

from config import Config

logger = logging.getLogger(__name__)


def get_naive_utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime(2025, 6, 19, 18, 0, tzinfo=ZoneInfo("Europe/Moscow"))
        >>> ensure_naive_datetime(aware_dt)
        datetime.datetime(2025, 6, 19, 15, 0)
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def platform_local_to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a receipt timestamp to naive UTC.

    Naive values are interpreted in the platform timezone (bank receipts print
    local time without an offset); aware values are converted as-is.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(Config.PLATFORM_TIMEZONE))
    return ensure_naive_datetime(dt)


def platform_date(dt: datetime) -> date:
    """Calendar date of a naive UTC datetime as seen in the platform timezone"""
    aware = dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt
    return aware.astimezone(ZoneInfo(Config.PLATFORM_TIMEZONE)).date()
