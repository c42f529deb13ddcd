"""
Tests for the Reconciliation Engine

Worst-case charges corrected after a late usage sync.
"""

from datetime import timedelta

import pytest

from screentime_settlement.billing.gateway import IDEMPOTENCY_REUSED_CODE, GatewayRejectedError
from screentime_settlement.core.exceptions import NotFoundError, ReconciliationAmbiguousError
from screentime_settlement.core.status import ChargeType, SettlementStatus
from screentime_settlement.engine import ReconciliationEngine
from screentime_settlement.engine.reconciliation import (
    REASON_LATE_SYNC_HIGHER,
    REASON_LATE_SYNC_LOWER,
    ReconciliationOutcome,
)
from screentime_settlement.engine.settlement import REASON_LATE_SYNC_UNSETTLED, idempotency_key

from conftest import AFTER_GRACE, GRACE_EXPIRES, WEEK_END


@pytest.fixture
def worst_case(make_commitment, settlement, clock):
    """A commitment settled at the 4200 cent worst case."""
    commitment = make_commitment()
    clock.set(AFTER_GRACE)
    settlement.settle(WEEK_END)
    return commitment


def _late_sync(ledger, commitment, day, minutes):
    ledger.record_usage(
        commitment.user_id, commitment.id, day, minutes,
        commitment.limit_minutes, commitment.penalty_per_minute_cents,
        timestamp=AFTER_GRACE + timedelta(hours=1),
    )


class TestRefunds:
    """Late actual lower than the worst case."""

    def test_full_refund(self, worst_case, reconciliation, gateway, penalties, payments):
        result = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert result.outcome == ReconciliationOutcome.REFUNDED
        assert result.delta_cents == -4200
        assert result.amount_cents == 4200

        row = penalties.get("user-1", worst_case.week_start)
        assert row.settlement_status == SettlementStatus.REFUNDED
        assert row.charged_amount_cents == 0
        assert row.refund_amount_cents == 4200
        assert row.needs_reconciliation is False
        assert row.reconciliation_delta_cents == 0
        assert row.reconciliation_reason == REASON_LATE_SYNC_LOWER
        assert row.refund_gateway_ref == result.gateway_ref

        refunds = [p for p in payments.list_for_user_week("user-1", worst_case.week_start) if p.payment_type == "penalty_refund"]
        assert len(refunds) == 1
        assert refunds[0].amount_cents == 4200
        assert refunds[0].related_gateway_ref == row.charge_gateway_ref
        assert gateway.refunds[0]["charge_ref"] == row.charge_gateway_ref
        assert refunds[0].idempotency_key == idempotency_key("user-1", worst_case.week_end, ChargeType.REFUND)

    def test_partial_refund(self, worst_case, reconciliation, penalties):
        result = reconciliation.reconcile("user-1", WEEK_END, 2500)

        assert result.outcome == ReconciliationOutcome.REFUNDED_PARTIAL
        assert result.delta_cents == -1700

        row = penalties.get("user-1", worst_case.week_start)
        assert row.settlement_status == SettlementStatus.REFUNDED_PARTIAL
        assert row.charged_amount_cents == 2500
        assert row.actual_amount_cents == 2500
        assert row.refund_amount_cents == 1700

    def test_refunded_week_is_not_refunded_again(self, worst_case, reconciliation, gateway):
        reconciliation.reconcile("user-1", WEEK_END, 0)

        again = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert again.outcome == ReconciliationOutcome.NOT_APPLICABLE
        assert gateway.refund_calls == 1

    def test_matching_actual_clears_flag(self, worst_case, reconciliation, gateway, penalties):
        result = reconciliation.reconcile("user-1", WEEK_END, 4200)

        assert result.outcome == ReconciliationOutcome.NO_CHANGE
        row = penalties.get("user-1", worst_case.week_start)
        assert row.settlement_status == SettlementStatus.CHARGED_WORST_CASE
        assert row.needs_reconciliation is False
        assert row.actual_amount_cents == 4200
        assert gateway.refund_calls == 0

    def test_actual_above_cap_is_capped(self, worst_case, reconciliation, gateway):
        result = reconciliation.reconcile("user-1", WEEK_END, 9000)

        assert result.outcome == ReconciliationOutcome.NO_CHANGE
        assert gateway.charge_calls == 1

    def test_only_worst_case_rows_reconcile(self, make_commitment, ledger, settlement, reconciliation, clock):
        commitment = make_commitment()
        ledger.record_usage("user-1", commitment.id, "2026-10-18", 80, 60, 10, timestamp=WEEK_END + timedelta(hours=1))
        clock.set(AFTER_GRACE)
        settlement.settle(WEEK_END)

        result = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert result.outcome == ReconciliationOutcome.NOT_APPLICABLE
        assert result.settlement_status == "charged_actual"

    def test_unknown_week(self, reconciliation):
        with pytest.raises(NotFoundError):
            reconciliation.reconcile("nobody", WEEK_END, 0)


class TestPositiveDelta:
    """Late actual higher than what was charged."""

    @pytest.fixture
    def undercharged(self, worst_case, db):
        db.execute(
            "UPDATE user_week_penalties SET charged_amount_cents = 1000 WHERE user_id = ? AND week_start = ?",
            ("user-1", worst_case.week_start),
        )
        return worst_case

    def test_disabled_goes_to_manual_review(self, undercharged, reconciliation, gateway, penalties):
        with pytest.raises(ReconciliationAmbiguousError) as exc_info:
            reconciliation.reconcile("user-1", WEEK_END, 1500)

        assert exc_info.value.delta_cents == 500
        row = penalties.get("user-1", undercharged.week_start)
        assert row.needs_reconciliation is True
        assert row.reconciliation_delta_cents == 500
        assert row.reconciliation_reason == REASON_LATE_SYNC_HIGHER
        assert row.settlement_status == SettlementStatus.CHARGED_WORST_CASE
        assert gateway.charge_calls == 1

    def test_enabled_charges_difference(self, undercharged, policy, gateway, db, penalties, payments):
        engine = ReconciliationEngine(policy, gateway, db, allow_adjustment_charges=True)

        result = engine.reconcile("user-1", WEEK_END, 1500)

        assert result.outcome == ReconciliationOutcome.CHARGED_ADJUSTMENT
        assert result.amount_cents == 500
        row = penalties.get("user-1", undercharged.week_start)
        assert row.settlement_status == SettlementStatus.CHARGED_ACTUAL_ADJUSTED
        assert row.charged_amount_cents == 1500
        assert row.needs_reconciliation is False
        adjustments = [p for p in payments.list_for_user_week("user-1", undercharged.week_start)
                       if p.payment_type == "penalty_actual_adjusted"]
        assert [p.amount_cents for p in adjustments] == [500]


class TestGatewayFailures:
    """Failed refunds stay flagged and are retried by the queue."""

    def test_transient_refund_stays_flagged(self, worst_case, reconciliation, gateway, penalties, transient_error):
        gateway.fail_next_refund(transient_error)

        result = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert result.outcome == ReconciliationOutcome.GATEWAY_TRANSIENT
        row = penalties.get("user-1", worst_case.week_start)
        assert row.settlement_status == SettlementStatus.CHARGED_WORST_CASE
        assert row.needs_reconciliation is True
        assert row.reconciliation_delta_cents == -4200
        assert row.reconciliation_detected_at is not None

    def test_reused_refund_key_leaves_row_to_its_owner(self, worst_case, reconciliation, gateway, penalties):
        gateway.fail_next_refund(GatewayRejectedError("Keys can only be reused with the same parameters",
                                                      code=IDEMPOTENCY_REUSED_CODE))

        result = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert result.outcome == ReconciliationOutcome.GATEWAY_REJECTED
        row = penalties.get("user-1", worst_case.week_start)
        assert row.failure_reason is None
        assert row.needs_reconciliation is True
        assert row.settlement_status == SettlementStatus.CHARGED_WORST_CASE

    def test_rejected_refund_records_reason(self, worst_case, reconciliation, gateway, penalties):
        gateway.fail_next_refund(GatewayRejectedError("Charge already refunded"))

        result = reconciliation.reconcile("user-1", WEEK_END, 0)

        assert result.outcome == ReconciliationOutcome.GATEWAY_REJECTED
        row = penalties.get("user-1", worst_case.week_start)
        assert row.failure_reason == "Charge already refunded"
        assert row.needs_reconciliation is True


class TestQueue:
    """process_queue retries detected deltas."""

    def test_queue_retries_failed_refund(self, worst_case, ledger, reconciliation, gateway, penalties, transient_error):
        _late_sync(ledger, worst_case, "2026-10-18", 30)
        gateway.fail_next_refund(transient_error)
        reconciliation.reconcile("user-1", WEEK_END, 0)

        run = reconciliation.process_queue()

        assert run.processed == 1
        assert run.refunds_issued == 1
        assert run.failures == []
        assert penalties.get("user-1", worst_case.week_start).settlement_status == SettlementStatus.REFUNDED
        assert len(gateway.refunds) == 1

    def test_dry_run_moves_nothing(self, worst_case, ledger, reconciliation, gateway, penalties, transient_error):
        _late_sync(ledger, worst_case, "2026-10-18", 80)
        gateway.fail_next_refund(transient_error)
        reconciliation.reconcile("user-1", WEEK_END, 200)

        run = reconciliation.process_queue(dry_run=True)

        assert run.dry_run is True
        assert run.results[0]["delta_cents"] == -4000
        assert gateway.refunds == []
        assert penalties.get("user-1", worst_case.week_start).needs_reconciliation is True

    def test_undetected_rows_are_left_alone(self, worst_case, reconciliation, gateway):
        """A worst-case row with no late sync has no evidence to refund on."""
        run = reconciliation.process_queue()

        assert run.processed == 0
        assert gateway.refund_calls == 0

    def test_usage_synced_before_settlement_is_refunded(self, make_commitment, ledger, settlement, reconciliation,
                                                          clock, gateway, penalties, payments):
        """Usage that lands after grace but before the run has no later sync to trigger it."""
        commitment = make_commitment()
        ledger.record_usage("user-1", commitment.id, "2026-10-18", 0, 60, 10,
                            timestamp=GRACE_EXPIRES + timedelta(minutes=1))
        clock.set(AFTER_GRACE)
        settlement.settle(WEEK_END)

        row = penalties.get("user-1", commitment.week_start)
        assert row.settlement_status == SettlementStatus.CHARGED_WORST_CASE
        assert row.reconciliation_reason == REASON_LATE_SYNC_UNSETTLED
        assert row.reconciliation_detected_at is not None

        run = reconciliation.process_queue()

        assert run.processed == 1
        assert run.refunds_issued == 1
        row = penalties.get("user-1", commitment.week_start)
        assert row.settlement_status == SettlementStatus.REFUNDED
        assert row.charged_amount_cents == 0
        assert [r["amount_cents"] for r in gateway.refunds] == [4200]
        refunds = [p for p in payments.list_for_user_week("user-1", commitment.week_start)
                   if p.payment_type == "penalty_refund"]
        assert [p.amount_cents for p in refunds] == [4200]

    def test_queue_filters(self, worst_case, ledger, reconciliation, gateway, transient_error):
        _late_sync(ledger, worst_case, "2026-10-18", 30)
        gateway.fail_next_refund(transient_error)
        reconciliation.reconcile("user-1", WEEK_END, 0)

        assert reconciliation.process_queue(user_id="someone-else").processed == 0
        assert reconciliation.process_queue(week_end=WEEK_END + timedelta(days=7)).processed == 0
        assert reconciliation.process_queue(week_end=WEEK_END, user_id="user-1").processed == 1

    def test_queue_reports_manual_review(self, worst_case, ledger, reconciliation, db):
        _late_sync(ledger, worst_case, "2026-10-18", 80)
        db.execute(
            "UPDATE user_week_penalties SET charged_amount_cents = 100 WHERE user_id = ?",
            ("user-1",),
        )
        with pytest.raises(ReconciliationAmbiguousError):
            reconciliation.reconcile("user-1", WEEK_END, 200)

        run = reconciliation.process_queue()

        assert run.manual_review == 1
        assert len(run.failures) == 1
