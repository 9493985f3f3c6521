"""
Operating Calendar

The one place that knows about the operating timezone. Every "what day is
it", "which slot are we in" and "are we inside active hours" question goes
through an OperatingCalendar so timezone policy stays a config value.

Handles DST transitions: non-existent local times move forward past the gap,
ambiguous local times resolve to the first occurrence.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional

import pytz

from trendwire.lib.time import to_utc_naive

logger = logging.getLogger(__name__)


def resolve_timezone(timezone_str: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{timezone_str}', falling back to UTC")
        return pytz.UTC


def safe_localize(tz: pytz.BaseTzInfo, naive_dt: datetime) -> datetime:
    """
    Safely localize a naive datetime, handling DST edge cases.

    - For non-existent times (during spring forward): Returns the time after the gap
    - For ambiguous times (during fall back): Returns the first occurrence (DST=True)
    """
    try:
        return tz.localize(naive_dt, is_dst=None)
    except pytz.AmbiguousTimeError:
        logger.debug(f"Ambiguous time {naive_dt} in {tz}, using DST=True")
        return tz.localize(naive_dt, is_dst=True)
    except pytz.NonExistentTimeError:
        logger.debug(f"Non-existent time {naive_dt} in {tz}, normalizing")
        localized = tz.localize(naive_dt, is_dst=False)
        return tz.normalize(localized)


def is_valid_timezone(timezone_str: str) -> bool:
    try:
        pytz.timezone(timezone_str)
        return True
    except pytz.UnknownTimeZoneError:
        return False


class OperatingCalendar:
    """
    Calendar arithmetic for one configured timezone.

    Inputs are naive UTC (or aware) datetimes; slot times are returned as
    naive UTC so they can be stored and compared directly.

    Args:
        timezone_str: IANA timezone name, e.g. 'Europe/Prague'
        active_start_hour: First local hour (0-23) in which jobs may run
        active_end_hour: Local hour (1-24) at which the active window closes
        slot_minutes: Length of one schedule slot; must divide a day evenly
    """

    def __init__(
        self,
        timezone_str: str = 'UTC',
        active_start_hour: int = 0,
        active_end_hour: int = 24,
        slot_minutes: int = 60,
    ):
        if not 0 <= active_start_hour < active_end_hour <= 24:
            raise ValueError(
                f"Invalid active hours {active_start_hour}-{active_end_hour}"
            )
        if slot_minutes <= 0 or (24 * 60) % slot_minutes:
            raise ValueError(f"Slot length {slot_minutes} must divide a day evenly")

        self.timezone_name = timezone_str
        self.tz = resolve_timezone(timezone_str)
        self.active_start_hour = active_start_hour
        self.active_end_hour = active_end_hour
        self.slot_minutes = slot_minutes

    @classmethod
    def from_config(cls, config) -> 'OperatingCalendar':
        return cls(
            timezone_str=config.get('OPERATING_TIMEZONE', 'UTC'),
            active_start_hour=config.get('ACTIVE_HOURS_START', 0),
            active_end_hour=config.get('ACTIVE_HOURS_END', 24),
            slot_minutes=config.get('SLOT_INTERVAL_MINUTES', 60),
        )

    def localize(self, now: Optional[datetime] = None) -> datetime:
        """Aware local datetime for a naive-UTC or aware input."""
        utc_naive = to_utc_naive(now)
        return pytz.UTC.localize(utc_naive).astimezone(self.tz)

    def to_utc(self, local_dt: datetime) -> datetime:
        return local_dt.astimezone(pytz.UTC).replace(tzinfo=None)

    def today(self, now: Optional[datetime] = None) -> date:
        return self.localize(now).date()

    def day_key(self, now: Optional[datetime] = None) -> str:
        return self.today(now).isoformat()

    def month_key(self, now: Optional[datetime] = None) -> str:
        return self.today(now).strftime('%Y-%m')

    def is_weekend(self, now: Optional[datetime] = None) -> bool:
        return self.localize(now).weekday() >= 5

    def is_within_active_hours(self, now: Optional[datetime] = None) -> bool:
        local_hour = self.localize(now).hour
        return self.active_start_hour <= local_hour < self.active_end_hour

    def _is_active_local(self, local_naive: datetime) -> bool:
        return self.active_start_hour <= local_naive.hour < self.active_end_hour

    def _floor_local(self, local_dt: datetime) -> datetime:
        minutes = local_dt.hour * 60 + local_dt.minute
        floored = minutes - (minutes % self.slot_minutes)
        return local_dt.replace(
            hour=floored // 60, minute=floored % 60, second=0, microsecond=0, tzinfo=None
        )

    def current_slot(self, now: Optional[datetime] = None) -> datetime:
        """Naive UTC start of the slot containing now."""
        local_naive = self._floor_local(self.localize(now))
        return self.to_utc(safe_localize(self.tz, local_naive))

    def slot_end(self, slot_start: datetime) -> datetime:
        return slot_start + timedelta(minutes=self.slot_minutes)

    def day_start(self, day: date) -> datetime:
        """Naive UTC time of the first active slot of a calendar day."""
        local_naive = datetime(day.year, day.month, day.day, self.active_start_hour)
        return self.to_utc(safe_localize(self.tz, local_naive))

    def iter_slot_starts(self, first_slot: datetime) -> Iterator[datetime]:
        """
        Yield consecutive slot starts inside active hours, beginning at the
        slot containing first_slot and wrapping into following days.
        """
        step = timedelta(minutes=self.slot_minutes)
        local_naive = self._floor_local(self.localize(first_slot))
        last_emitted = None
        # Two weeks of slots is far more than any plan needs
        for _ in range(14 * 24 * 60 // self.slot_minutes):
            if self._is_active_local(local_naive):
                slot_utc = self.to_utc(safe_localize(self.tz, local_naive))
                # A DST gap can map two local slots onto one instant
                if last_emitted is None or slot_utc > last_emitted:
                    last_emitted = slot_utc
                    yield slot_utc
            local_naive += step

    def slot_starts(self, first_slot: datetime, count: int) -> List[datetime]:
        slots = []
        if count <= 0:
            return slots
        for slot in self.iter_slot_starts(first_slot):
            slots.append(slot)
            if len(slots) == count:
                break
        return slots

    def describe(self, now: Optional[datetime] = None) -> dict:
        local_now = self.localize(now)
        return {
            'timezone': self.timezone_name,
            'local_time': local_now.isoformat(),
            'today': local_now.date().isoformat(),
            'within_active_hours': self.is_within_active_hours(now),
            'active_hours': [self.active_start_hour, self.active_end_hour],
            'slot_minutes': self.slot_minutes,
            'current_slot': self.current_slot(now).isoformat(),
        }
