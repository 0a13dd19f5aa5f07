"""
Frequency Resolver — maps the schedule frequency vocabulary to intervals
and decides whether a per-account custom schedule is due.
"""

import enum
from datetime import datetime, timedelta
from typing import Optional, Protocol

# A preferred time matches when "now" is within this many minutes of it
PREFERRED_TIME_WINDOW_MINUTES = 5
MINUTES_PER_DAY = 24 * 60


class UnknownFrequency(ValueError):
    """Raised when a schedule names a frequency outside the vocabulary."""

    def __init__(self, label):
        super().__init__(f"Unknown sync frequency: {label!r}")
        self.label = label


class Frequency(str, enum.Enum):
    EVERY_15_MINUTES = "every_15_minutes"
    EVERY_30_MINUTES = "every_30_minutes"
    HOURLY = "hourly"
    EVERY_2_HOURS = "every_2_hours"
    EVERY_4_HOURS = "every_4_hours"
    EVERY_6_HOURS = "every_6_hours"
    EVERY_12_HOURS = "every_12_hours"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def interval_ms(self) -> int:
        return _INTERVAL_MS[self]


_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS

_INTERVAL_MS = {
    Frequency.EVERY_15_MINUTES: 15 * _MINUTE_MS,
    Frequency.EVERY_30_MINUTES: 30 * _MINUTE_MS,
    Frequency.HOURLY: _HOUR_MS,
    Frequency.EVERY_2_HOURS: 2 * _HOUR_MS,
    Frequency.EVERY_4_HOURS: 4 * _HOUR_MS,
    Frequency.EVERY_6_HOURS: 6 * _HOUR_MS,
    Frequency.EVERY_12_HOURS: 12 * _HOUR_MS,
    Frequency.DAILY: _DAY_MS,
    Frequency.WEEKLY: 7 * _DAY_MS,
    Frequency.MONTHLY: 30 * _DAY_MS,
}


def resolve_frequency_ms(label: str) -> int:
    """Interval in milliseconds for a frequency label. Raises UnknownFrequency."""
    try:
        return Frequency(label).interval_ms
    except ValueError:
        raise UnknownFrequency(label) from None


def resolve_frequency(label: str) -> timedelta:
    return timedelta(milliseconds=resolve_frequency_ms(label))


def parse_preferred_time(value: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse "HH:MM" into (hours, minutes). None passes through."""
    if value is None:
        return None
    try:
        hours_str, minutes_str = value.split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Preferred time must be HH:MM, got {value!r}") from None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Preferred time out of range: {value!r}")
    return hours, minutes


def day_of_week(moment: datetime) -> int:
    """Day index with 0 = Sunday, 6 = Saturday."""
    return (moment.weekday() + 1) % 7


class ScheduleLike(Protocol):
    is_enabled: bool
    frequency: str
    last_run_at: Optional[datetime]
    preferred_time: Optional[str]
    preferred_day_of_week: Optional[int]


def is_schedule_due(schedule: ScheduleLike, now: datetime) -> bool:
    """
    A custom schedule is due when it is enabled, its interval has elapsed
    since the last run, "now" is within the preferred time window (wrapping
    midnight) and, for weekly schedules, today is the preferred day.
    """
    if not schedule.is_enabled:
        return False

    interval = resolve_frequency(schedule.frequency)
    if schedule.last_run_at is not None and now - schedule.last_run_at < interval:
        return False

    preferred = parse_preferred_time(schedule.preferred_time)
    if preferred is not None:
        preferred_minutes = preferred[0] * 60 + preferred[1]
        current_minutes = now.hour * 60 + now.minute
        diff = abs(current_minutes - preferred_minutes)
        if PREFERRED_TIME_WINDOW_MINUTES < diff < MINUTES_PER_DAY - PREFERRED_TIME_WINDOW_MINUTES:
            return False

    if schedule.frequency == Frequency.WEEKLY.value and schedule.preferred_day_of_week is not None:
        if day_of_week(now) != schedule.preferred_day_of_week:
            return False

    return True
