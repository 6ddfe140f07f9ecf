"""
Time helpers

Timestamps are stored as naive UTC datetimes; convert at the edges only.
"""
from datetime import datetime, timedelta, timezone


def utc_now_naive() -> datetime:
    """
    Current UTC time without tzinfo (the storage format)

    Returns:
        naive datetime in UTC
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Convert any datetime to naive UTC

    Args:
        dt: aware or naive datetime; naive values are assumed to be UTC

    Returns:
        naive datetime in UTC
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def hours_ago(hours: float, now: datetime | None = None) -> datetime:
    """Naive UTC timestamp `hours` before now"""
    return (now or utc_now_naive()) - timedelta(hours=hours)
