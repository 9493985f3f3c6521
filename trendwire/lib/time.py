"""
Time helpers shared across the scheduler.

All persisted timestamps are naive UTC. utcnow_naive() is the single source
of "now"; to_utc_naive() folds aware datetimes (cron payloads, tests) into
the same representation before they are compared with stored values.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow_naive() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> datetime:
    """
    Normalize a datetime to naive UTC.

    None means "now". Naive input is assumed to already be UTC.
    """
    if value is None:
        return utcnow_naive()
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def minutes_since(earlier: datetime, now: datetime) -> float:
    return (now - earlier).total_seconds() / 60
