"""
Timing Policy

Every engine call receives an explicit TimingPolicy instead of reading
global configuration. It answers three questions:

- When is the next weekly deadline?
- When does the grace window for a deadline close?
- Which week is the "most recently completed" one for a settlement run?

Production weeks end Monday 12:00 in a fixed timezone (America/New_York)
with a 24 hour grace window. Accelerated mode compresses the week to a few
minutes on a fixed UTC grid so the whole state machine can be exercised
without waiting a week.
"""

import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from .exceptions import ValidationError

DEFAULT_TIMEZONE = "America/New_York"

# Monday
DEADLINE_WEEKDAY = 0
DEADLINE_TIME = time(12, 0)

PRODUCTION_WEEK = timedelta(days=7)
PRODUCTION_GRACE = timedelta(days=1)
ACCELERATED_WEEK = timedelta(minutes=3)
ACCELERATED_GRACE = timedelta(minutes=1)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """Canonical storage form for timestamps and week keys."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a stored ISO timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            raise ValidationError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimingPolicy:
    """
    Week and grace durations plus the clock used to judge them.

    Attributes:
        week_duration: Length of a commitment week
        grace_duration: How long after the deadline a sync still counts as on time
        clock_now: Returns the current aware datetime
        timezone_name: Zone in which deadlines and usage dates are local
        calendar_aligned: Deadlines fall on Monday noon local time (production)
            rather than on a UTC grid of week_duration (accelerated)
    """
    week_duration: timedelta = PRODUCTION_WEEK
    grace_duration: timedelta = PRODUCTION_GRACE
    clock_now: Callable[[], datetime] = field(default=utc_now, compare=False)
    timezone_name: str = DEFAULT_TIMEZONE
    calendar_aligned: bool = True

    @classmethod
    def production(
        cls,
        clock_now: Optional[Callable[[], datetime]] = None,
        timezone_name: str = DEFAULT_TIMEZONE,
    ) -> "TimingPolicy":
        return cls(
            week_duration=PRODUCTION_WEEK,
            grace_duration=PRODUCTION_GRACE,
            clock_now=clock_now or utc_now,
            timezone_name=timezone_name,
            calendar_aligned=True,
        )

    @classmethod
    def accelerated(
        cls,
        clock_now: Optional[Callable[[], datetime]] = None,
        week_duration: timedelta = ACCELERATED_WEEK,
        grace_duration: timedelta = ACCELERATED_GRACE,
        timezone_name: str = DEFAULT_TIMEZONE,
    ) -> "TimingPolicy":
        return cls(
            week_duration=week_duration,
            grace_duration=grace_duration,
            clock_now=clock_now or utc_now,
            timezone_name=timezone_name,
            calendar_aligned=False,
        )

    @classmethod
    def from_environment(cls, clock_now: Optional[Callable[[], datetime]] = None) -> "TimingPolicy":
        """Build the policy selected by TESTING_MODE / SETTLEMENT_TIMEZONE."""
        tz_name = os.environ.get("SETTLEMENT_TIMEZONE", DEFAULT_TIMEZONE)
        if os.environ.get("TESTING_MODE", "false").lower() == "true":
            return cls.accelerated(clock_now=clock_now, timezone_name=tz_name)
        return cls.production(clock_now=clock_now, timezone_name=tz_name)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    def now(self) -> datetime:
        return parse_timestamp(self.clock_now())

    def local_date(self, value: datetime) -> date:
        """Calendar date of an instant in the policy timezone."""
        return value.astimezone(self.tz).date()

    def _deadline_on(self, day: date) -> datetime:
        local = datetime.combine(day, DEADLINE_TIME, tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    def next_deadline(self, now: Optional[datetime] = None) -> datetime:
        """First deadline strictly after now."""
        now = parse_timestamp(now) if now else self.now()

        if not self.calendar_aligned:
            step = self.week_duration.total_seconds()
            elapsed = (now - _EPOCH).total_seconds()
            ticks = int(elapsed // step) + 1
            return _EPOCH + timedelta(seconds=ticks * step)

        today = self.local_date(now)
        days_ahead = (DEADLINE_WEEKDAY - today.weekday()) % 7
        candidate = self._deadline_on(today + timedelta(days=days_ahead))
        if candidate <= now:
            candidate = self._deadline_on(today + timedelta(days=days_ahead + 7))
        return candidate

    def last_deadline(self, now: Optional[datetime] = None) -> datetime:
        """Most recent deadline at or before now (the most recently completed week)."""
        now = parse_timestamp(now) if now else self.now()

        if not self.calendar_aligned:
            step = self.week_duration.total_seconds()
            elapsed = (now - _EPOCH).total_seconds()
            return _EPOCH + timedelta(seconds=int(elapsed // step) * step)

        today = self.local_date(now)
        days_since = (today.weekday() - DEADLINE_WEEKDAY) % 7
        candidate = self._deadline_on(today - timedelta(days=days_since))
        if candidate > now:
            candidate = self._deadline_on(today - timedelta(days=days_since + 7))
        return candidate

    def week_start(self, week_end: datetime) -> datetime:
        return parse_timestamp(week_end) - self.week_duration

    def grace_deadline(self, week_end: datetime) -> datetime:
        return parse_timestamp(week_end) + self.grace_duration

    def resolve_week_target(self, override: Optional[Union[str, date, datetime]] = None) -> datetime:
        """
        Resolve the week_end a settlement run should target.

        A bare date is read as that day's deadline time in the policy
        timezone; a full timestamp is used as is. Without an override the
        most recently completed week is returned.
        """
        if override is None or override == "":
            return self.last_deadline()
        if isinstance(override, datetime):
            return parse_timestamp(override)
        if isinstance(override, date):
            return self._deadline_on(override)
        if len(override) == 10:
            try:
                return self._deadline_on(date.fromisoformat(override))
            except ValueError:
                raise ValidationError(f"Invalid target week: {override!r}")
        return parse_timestamp(override)

    def is_known_in_time(
        self,
        last_updated: Optional[datetime],
        week_end: datetime,
        grace_expires_at: Optional[datetime] = None,
    ) -> bool:
        """
        True when usage was synced strictly after the deadline and no later
        than the close of grace. A sync before the deadline does not count.
        """
        if last_updated is None:
            return False
        week_end = parse_timestamp(week_end)
        last_updated = parse_timestamp(last_updated)
        grace = parse_timestamp(grace_expires_at) if grace_expires_at else self.grace_deadline(week_end)
        return week_end < last_updated <= grace
