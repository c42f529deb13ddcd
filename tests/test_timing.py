"""
Tests for the Timing Policy

Deadlines, grace windows and the "known in time" rule.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from screentime_settlement.core.exceptions import ValidationError
from screentime_settlement.core.timing import TimingPolicy, isoformat_utc

from conftest import FakeClock, GRACE_EXPIRES, WEEK_END


class TestProductionDeadlines:
    """Monday noon America/New_York deadlines."""

    def test_next_deadline_midweek(self):
        """Thursday resolves to the following Monday noon."""
        policy = TimingPolicy.production(clock_now=FakeClock(datetime(2026, 10, 15, 18, 0, tzinfo=timezone.utc)))

        assert policy.next_deadline() == WEEK_END

    def test_next_deadline_monday_morning_is_same_day(self):
        """Monday 09:00 local is before the deadline, so today noon."""
        monday_morning = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
        policy = TimingPolicy.production(clock_now=FakeClock(monday_morning))

        assert policy.next_deadline() == WEEK_END

    def test_next_deadline_at_deadline_rolls_over(self):
        """Exactly at the deadline the next one is a week later."""
        policy = TimingPolicy.production(clock_now=FakeClock(WEEK_END))

        assert policy.next_deadline() == WEEK_END + timedelta(days=7)

    def test_deadline_tracks_daylight_saving(self):
        """After DST ends noon Eastern is 17:00 UTC."""
        policy = TimingPolicy.production(clock_now=FakeClock(datetime(2026, 11, 4, 12, 0, tzinfo=timezone.utc)))

        assert policy.next_deadline() == datetime(2026, 11, 9, 17, 0, tzinfo=timezone.utc)

    def test_last_deadline_is_most_recent_monday(self):
        """Tuesday afternoon resolves to yesterday's deadline."""
        policy = TimingPolicy.production(clock_now=FakeClock(GRACE_EXPIRES + timedelta(hours=2)))

        assert policy.last_deadline() == WEEK_END

    def test_grace_and_week_start(self):
        policy = TimingPolicy.production()

        assert policy.grace_deadline(WEEK_END) == GRACE_EXPIRES
        assert policy.week_start(WEEK_END) == WEEK_END - timedelta(days=7)


class TestAcceleratedMode:
    """Compressed weeks for end-to-end testing."""

    def test_deadlines_on_three_minute_grid(self):
        now = datetime(2026, 10, 19, 10, 1, 30, tzinfo=timezone.utc)
        policy = TimingPolicy.accelerated(clock_now=FakeClock(now))

        assert policy.next_deadline() == datetime(2026, 10, 19, 10, 3, tzinfo=timezone.utc)
        assert policy.last_deadline() == datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
        assert policy.grace_deadline(policy.last_deadline()) == datetime(2026, 10, 19, 10, 1, tzinfo=timezone.utc)

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("TESTING_MODE", "true")
        policy = TimingPolicy.from_environment()

        assert policy.calendar_aligned is False
        assert policy.week_duration == timedelta(minutes=3)
        assert policy.grace_duration == timedelta(minutes=1)


class TestWeekTarget:
    """Resolving the week a settlement run targets."""

    def test_date_override_is_local_noon(self):
        policy = TimingPolicy.production()

        assert policy.resolve_week_target("2026-10-19") == WEEK_END
        assert policy.resolve_week_target(date(2026, 10, 19)) == WEEK_END

    def test_timestamp_override(self):
        policy = TimingPolicy.production()

        assert policy.resolve_week_target(isoformat_utc(WEEK_END)) == WEEK_END

    def test_invalid_override_rejected(self):
        policy = TimingPolicy.production()

        with pytest.raises(ValidationError):
            policy.resolve_week_target("2026-13-45")

    def test_default_is_last_deadline(self):
        policy = TimingPolicy.production(clock_now=FakeClock(GRACE_EXPIRES + timedelta(minutes=1)))

        assert policy.resolve_week_target() == WEEK_END


class TestKnownInTime:
    """Only a sync inside (deadline, grace] counts."""

    def test_sync_before_deadline_does_not_count(self):
        policy = TimingPolicy.production()

        assert policy.is_known_in_time(WEEK_END - timedelta(seconds=1), WEEK_END) is False

    def test_sync_at_deadline_does_not_count(self):
        policy = TimingPolicy.production()

        assert policy.is_known_in_time(WEEK_END, WEEK_END) is False

    def test_sync_inside_grace_counts(self):
        policy = TimingPolicy.production()

        assert policy.is_known_in_time(WEEK_END + timedelta(seconds=1), WEEK_END) is True
        assert policy.is_known_in_time(GRACE_EXPIRES, WEEK_END) is True

    def test_sync_after_grace_does_not_count(self):
        policy = TimingPolicy.production()

        assert policy.is_known_in_time(GRACE_EXPIRES + timedelta(seconds=1), WEEK_END) is False

    def test_never_synced(self):
        assert TimingPolicy.production().is_known_in_time(None, WEEK_END) is False
