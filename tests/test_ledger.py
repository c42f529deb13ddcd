"""
Tests for the Usage Ledger and Penalty Aggregator
"""

from datetime import timedelta

import pytest

from screentime_settlement.core.exceptions import NotFoundError, ValidationError
from screentime_settlement.core.timing import isoformat_utc
from screentime_settlement.engine.ledger import compute_day_penalty, parse_usage_date

from conftest import WEEK_END


class TestDayPenalty:
    """Per-day penalty arithmetic."""

    def test_under_limit_is_free(self):
        assert compute_day_penalty(45, 60, 10) == (0.0, 0)

    def test_whole_minutes(self):
        assert compute_day_penalty(80, 60, 10) == (20.0, 200)

    def test_fractional_minutes_round_half_up(self):
        """4.9 minutes over at 10 cents is 49 cents."""
        exceeded, penalty = compute_day_penalty(64.9, 60, 10)

        assert exceeded == pytest.approx(4.9)
        assert penalty == 49

    def test_half_cent_rounds_up(self):
        assert compute_day_penalty(60.5, 60, 1) == (0.5, 1)

    def test_zero_rate(self):
        assert compute_day_penalty(600, 60, 0) == (540.0, 0)


class TestParseUsageDate:

    def test_accepts_iso_string(self):
        assert parse_usage_date("2026-10-14") == "2026-10-14"

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_usage_date("yesterday")


class TestUsageLedger:
    """Recording usage and aggregating the week."""

    def test_record_usage_updates_total(self, make_commitment, ledger, penalties):
        commitment = make_commitment()

        ledger.record_usage("user-1", commitment.id, "2026-10-13", 80, 60, 10)
        ledger.record_usage("user-1", commitment.id, "2026-10-14", 64.9, 60, 10)

        row = penalties.get("user-1", commitment.week_start)
        assert row.total_penalty_cents == 249

    def test_same_day_overwrites(self, make_commitment, ledger, usage, penalties):
        """A later report for the same day replaces the earlier one."""
        commitment = make_commitment()

        ledger.record_usage("user-1", commitment.id, "2026-10-13", 90, 60, 10)
        ledger.record_usage("user-1", commitment.id, "2026-10-13", 70, 60, 10)

        entries = usage.list_for_commitment(commitment.id)
        assert len(entries) == 1
        assert entries[0].used_minutes == 70.0
        assert penalties.get("user-1", commitment.week_start).total_penalty_cents == 100

    def test_negative_minutes_rejected(self, make_commitment, ledger, usage):
        commitment = make_commitment()

        with pytest.raises(ValidationError):
            ledger.record_usage("user-1", commitment.id, "2026-10-13", -5, 60, 10)

        assert usage.list_for_commitment(commitment.id) == []

    def test_last_updated_is_report_time(self, make_commitment, ledger, penalties):
        commitment = make_commitment()
        reported = WEEK_END + timedelta(hours=2)

        ledger.record_usage("user-1", commitment.id, "2026-10-18", 80, 60, 10, timestamp=reported)

        assert penalties.get("user-1", commitment.week_start).last_updated == isoformat_utc(reported)

    def test_last_updated_defaults_to_policy_clock(self, make_commitment, ledger, penalties, clock):
        commitment = make_commitment()

        ledger.record_usage("user-1", commitment.id, "2026-10-15", 80, 60, 10)

        assert penalties.get("user-1", commitment.week_start).last_updated == isoformat_utc(clock())

    def test_unknown_commitment(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.record_usage("user-1", "missing", "2026-10-15", 80, 60, 10)
