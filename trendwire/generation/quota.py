"""
Quota Governor

Hard budget for calls to the upstream trend API. Two counters are kept per
call: one for the operating-calendar day (weekday and weekend ceilings
differ) and one for the month. Both live in the quota_usage table so the
budget survives restarts and is shared by every worker.

can_call() is a read-only check. record_call() is a conditional increment of
both buckets in one transaction; if either is already full the transaction is
rolled back and QuotaExceededError is raised, so a count can never pass its
ceiling. Ceilings always come from the current configuration; the one stored
on a bucket is the limit that was in force at its last counted call.
"""

import calendar as month_calendar
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from trendwire import db
from trendwire.db_retry import with_db_retry
from trendwire.generation.constants import (
    QUOTA_CRITICAL_RATIO,
    QUOTA_PERIOD_DAY,
    QUOTA_PERIOD_MONTH,
    QUOTA_WARNING_RATIO,
)
from trendwire.generation.errors import PersistenceUnavailableError, QuotaExceededError
from trendwire.lib.calendar import OperatingCalendar
from trendwire.lib.time import to_utc_naive
from trendwire.models import QuotaUsage

logger = logging.getLogger(__name__)


def day_bucket(day_key: str) -> str:
    return f'{QUOTA_PERIOD_DAY}:{day_key}'


def month_bucket(month_key: str) -> str:
    return f'{QUOTA_PERIOD_MONTH}:{month_key}'


def usage_status(used: int, limit: int) -> str:
    if limit <= 0:
        return 'critical'
    ratio = used / limit
    if ratio > QUOTA_CRITICAL_RATIO:
        return 'critical'
    if ratio > QUOTA_WARNING_RATIO:
        return 'warning'
    return 'safe'


class QuotaGovernor:
    """
    Args:
        calendar: OperatingCalendar that defines day and month boundaries
        weekday_limit: Daily ceiling Monday to Friday
        weekend_limit: Daily ceiling on Saturday and Sunday
        monthly_limit: Ceiling for the calendar month
    """

    def __init__(
        self,
        calendar: Optional[OperatingCalendar] = None,
        weekday_limit: int = 8,
        weekend_limit: int = 6,
        monthly_limit: int = 250,
        daily_retention_days: int = 60,
        monthly_retention_months: int = 12,
    ):
        if min(weekday_limit, weekend_limit, monthly_limit) < 0:
            raise ValueError("Quota limits cannot be negative")
        self.calendar = calendar or OperatingCalendar()
        self.weekday_limit = weekday_limit
        self.weekend_limit = weekend_limit
        self.monthly_limit = monthly_limit
        self.daily_retention_days = daily_retention_days
        self.monthly_retention_months = monthly_retention_months

    @classmethod
    def from_config(cls, config, calendar: Optional[OperatingCalendar] = None) -> 'QuotaGovernor':
        return cls(
            calendar=calendar or OperatingCalendar.from_config(config),
            weekday_limit=config.get('QUOTA_WEEKDAY_LIMIT', 8),
            weekend_limit=config.get('QUOTA_WEEKEND_LIMIT', 6),
            monthly_limit=config.get('QUOTA_MONTHLY_LIMIT', 250),
            daily_retention_days=config.get('QUOTA_DAILY_RETENTION_DAYS', 60),
            monthly_retention_months=config.get('QUOTA_MONTHLY_RETENTION_MONTHS', 12),
        )

    def daily_limit(self, now: Optional[datetime] = None) -> int:
        return self.weekend_limit if self.calendar.is_weekend(now) else self.weekday_limit

    def _bucket_specs(self, now):
        return (
            (day_bucket(self.calendar.day_key(now)), QUOTA_PERIOD_DAY,
             self.calendar.day_key(now), self.daily_limit(now)),
            (month_bucket(self.calendar.month_key(now)), QUOTA_PERIOD_MONTH,
             self.calendar.month_key(now), self.monthly_limit),
        )

    @with_db_retry()
    def _read_counts(self, now):
        counts = {}
        for bucket, period, _key, ceiling in self._bucket_specs(now):
            row = db.session.get(QuotaUsage, bucket)
            counts[period] = (row.count if row else 0, ceiling)
        return counts

    def can_call(self, now: Optional[datetime] = None) -> bool:
        """True while both the daily and the monthly bucket have room. No side effects."""
        now = to_utc_naive(now)
        try:
            counts = self._read_counts(now)
        except (PersistenceUnavailableError, SQLAlchemyError) as e:
            logger.error(f"Quota check failed, treating as exhausted: {e}")
            return False

        daily_count, daily_ceiling = counts[QUOTA_PERIOD_DAY]
        monthly_count, monthly_ceiling = counts[QUOTA_PERIOD_MONTH]
        return daily_count < daily_ceiling and monthly_count < monthly_ceiling

    @with_db_retry()
    def _ensure_buckets(self, now):
        created = False
        for bucket, period, key, ceiling in self._bucket_specs(now):
            if db.session.get(QuotaUsage, bucket) is None:
                db.session.add(QuotaUsage(
                    bucket=bucket, period=period, period_key=key,
                    count=0, ceiling=ceiling, updated_at=now,
                ))
                created = True
        if not created:
            return
        try:
            db.session.commit()
        except IntegrityError:
            # Another worker created the bucket first
            db.session.rollback()

    @with_db_retry()
    def _increment(self, now) -> Optional[str]:
        """Bump both buckets; returns the name of a full bucket, or None on success."""
        for bucket, _period, _key, ceiling in self._bucket_specs(now):
            # The configured ceiling wins over the one stored with the bucket
            result = db.session.execute(
                update(QuotaUsage)
                .where(QuotaUsage.bucket == bucket)
                .where(QuotaUsage.count < ceiling)
                .values(count=QuotaUsage.count + 1, ceiling=ceiling, updated_at=now)
            )
            if result.rowcount == 0:
                db.session.rollback()
                return bucket
        db.session.commit()
        return None

    def record_call(self, now: Optional[datetime] = None) -> None:
        """
        Count one upstream call against today and this month.

        Raises:
            QuotaExceededError: a ceiling was already reached; nothing was counted
            PersistenceUnavailableError: the counters could not be written
        """
        now = to_utc_naive(now)
        self._ensure_buckets(now)
        full_bucket = self._increment(now)
        if full_bucket:
            logger.warning(f"Quota call rejected: bucket {full_bucket} is at its ceiling")
            raise QuotaExceededError(f"Quota bucket {full_bucket} is exhausted")
        logger.debug(f"Quota call recorded for {self.calendar.day_key(now)}")

    def usage(self, now: Optional[datetime] = None) -> dict:
        now = to_utc_naive(now)
        counts = self._read_counts(now)
        daily_count, daily_ceiling = counts[QUOTA_PERIOD_DAY]
        monthly_count, monthly_ceiling = counts[QUOTA_PERIOD_MONTH]

        today = self.calendar.today(now)
        days_in_month = month_calendar.monthrange(today.year, today.month)[1]
        remaining_days = days_in_month - today.day + 1
        monthly_remaining = max(monthly_ceiling - monthly_count, 0)

        return {
            'date': today.isoformat(),
            'month': self.calendar.month_key(now),
            'is_weekend': self.calendar.is_weekend(now),
            'daily_count': daily_count,
            'daily_limit': daily_ceiling,
            'daily_remaining': max(daily_ceiling - daily_count, 0),
            'monthly_count': monthly_count,
            'monthly_limit': monthly_ceiling,
            'monthly_remaining': monthly_remaining,
            'percent_used': round(monthly_count / monthly_ceiling * 100, 1) if monthly_ceiling else 100.0,
            'status': usage_status(monthly_count, monthly_ceiling),
            'remaining_days': remaining_days,
            'recommended_daily_limit': monthly_remaining // remaining_days,
            'can_call': daily_count < daily_ceiling and monthly_count < monthly_ceiling,
        }

    @with_db_retry()
    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete day buckets and month buckets past their retention window."""
        now = to_utc_naive(now)
        today = self.calendar.today(now)
        day_cutoff = (today - timedelta(days=self.daily_retention_days)).isoformat()

        month_index = today.year * 12 + (today.month - 1) - self.monthly_retention_months
        month_cutoff = f'{month_index // 12:04d}-{month_index % 12 + 1:02d}'

        days = db.session.execute(
            delete(QuotaUsage)
            .where(QuotaUsage.period == QUOTA_PERIOD_DAY)
            .where(QuotaUsage.period_key < day_cutoff)
        ).rowcount
        months = db.session.execute(
            delete(QuotaUsage)
            .where(QuotaUsage.period == QUOTA_PERIOD_MONTH)
            .where(QuotaUsage.period_key < month_cutoff)
        ).rowcount
        db.session.commit()

        if days or months:
            logger.info(f"Pruned {days} daily and {months} monthly quota buckets")
        return days + months
