"""
Tests for the Weekly Pool Aggregator
"""

from datetime import timedelta

import pytest

from screentime_settlement.core.exceptions import NotFoundError
from screentime_settlement.core.status import PoolStatus
from screentime_settlement.core.timing import isoformat_utc

from conftest import AFTER_GRACE, WEEK_END, WEEK_START


class TestWeeklyPool:

    def test_commitment_opens_pool(self, make_commitment, pools):
        make_commitment()

        pool = pools.get(isoformat_utc(WEEK_START))
        assert pool.status == PoolStatus.OPEN
        assert pool.total_penalty_cents == 0

    def test_close_sums_charged_amounts(self, make_commitment, ledger, settlement, reconciliation, pool_aggregator, clock):
        make_commitment("user-1")
        paid = make_commitment("user-2")
        ledger.record_usage("user-2", paid.id, "2026-10-18", 80, 60, 10, timestamp=WEEK_END + timedelta(hours=1))
        make_commitment("user-3", with_payment_method=False)
        clock.set(AFTER_GRACE)
        settlement.settle(WEEK_END)
        reconciliation.reconcile("user-1", WEEK_END, 2500)

        pool = pool_aggregator.close_week(WEEK_START)

        # 2500 after the partial refund plus 200 actual; user-3 was never charged
        assert pool.total_penalty_cents == 2700
        assert pool.status == PoolStatus.CLOSED
        assert pool.closed_at == isoformat_utc(AFTER_GRACE)

    def test_close_is_scoped_to_one_week(self, make_commitment, pool_aggregator, pools, clock):
        make_commitment("user-1")
        make_commitment("user-1", week_end=WEEK_END + timedelta(days=7))
        clock.set(AFTER_GRACE)

        pool_aggregator.close_week_ending(WEEK_END)

        assert pools.get(isoformat_utc(WEEK_START)).status == PoolStatus.CLOSED
        assert pools.get(isoformat_utc(WEEK_END)).status == PoolStatus.OPEN

    def test_second_close_is_noop(self, make_commitment, settlement, pool_aggregator, penalties, clock, db):
        make_commitment()
        clock.set(AFTER_GRACE)
        settlement.settle(WEEK_END)
        first = pool_aggregator.close_week(WEEK_START)

        db.execute("UPDATE user_week_penalties SET charged_amount_cents = 1 WHERE user_id = ?", ("user-1",))
        clock.advance(hours=3)
        second = pool_aggregator.close_week(WEEK_START)

        assert second.total_penalty_cents == first.total_penalty_cents == 4200
        assert second.closed_at == first.closed_at

    def test_missing_pool(self, pool_aggregator):
        with pytest.raises(NotFoundError):
            pool_aggregator.close_week(WEEK_START)
