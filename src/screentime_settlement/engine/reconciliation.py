"""
Reconciliation Engine

Corrects worst-case charges once the real usage for the week arrives late.

    capped = min(new_actual, max_charge)
    delta  = capped - charged

- delta == 0: clear the flag, nothing moves.
- delta < 0: refund |delta|. A refund of everything charged ends in
  `refunded`, anything less in `refunded_partial`. A refund payment row is
  always written.
- delta > 0: charging more is disabled unless allow_adjustment_charges is
  set; otherwise the row stays flagged and ReconciliationAmbiguousError is
  raised for manual review.

The delta, reason and detection time are written before any money moves,
so an unresolved correction is visible while it is in flight. Rows left
flagged (gateway outage, rejected refund) are retried by process_queue().

A week has at most one refund and one top-up, so their idempotency keys
name only (user, week_end, type). Two overlapping reconciles with
different totals collide at the gateway: the second is rejected for
reusing the key with another amount, and the first keeps replaying its
own movement until its CAS records it.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog

from ..billing.gateway import (
    IDEMPOTENCY_REUSED_CODE,
    GatewayRejectedError,
    GatewayTransientError,
    PaymentGateway,
)
from ..core.exceptions import (
    ConcurrentUpdateError,
    NotFoundError,
    ReconciliationAmbiguousError,
)
from ..core.status import ChargeType, PaymentType, SettlementStatus, validate_transition
from ..core.timing import TimingPolicy, isoformat_utc
from ..persistence.database import Database, get_database
from ..persistence.models import CommitmentRecord, PaymentRecord, UserWeekPenaltyRecord
from ..persistence.repository import (
    CommitmentRepository,
    PaymentRepository,
    PenaltyRepository,
    UsageRepository,
)
from .settlement import MAX_CAS_ATTEMPTS, idempotency_key

logger = structlog.get_logger()

DEFAULT_QUEUE_LIMIT = 25
MAX_QUEUE_LIMIT = 100

# Passes spent recording a movement the gateway already executed
MAX_RECORD_ATTEMPTS = 10

REASON_LATE_SYNC_LOWER = "late_sync_lower_than_charged"
REASON_LATE_SYNC_HIGHER = "late_sync_higher_than_charged"


def adjustment_charges_from_env() -> bool:
    return os.environ.get("ALLOW_ADJUSTMENT_CHARGES", "false").lower() == "true"


@dataclass
class _InFlight:
    """A refund or top-up the gateway has executed but no CAS has recorded yet."""
    delta_cents: Optional[int] = None
    capped_cents: int = 0


class ReconciliationOutcome:
    NO_CHANGE = "no_change"
    REFUNDED = "refunded"
    REFUNDED_PARTIAL = "refunded_partial"
    CHARGED_ADJUSTMENT = "charged_actual_adjusted"
    MANUAL_REVIEW = "manual_review"
    GATEWAY_TRANSIENT = "gateway_transient"
    GATEWAY_REJECTED = "gateway_rejected"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class ReconciliationResult:
    """Outcome of one reconcile() call. delta_cents is the detected delta."""
    user_id: str
    week_start: str
    outcome: str
    settlement_status: str
    delta_cents: int = 0
    amount_cents: int = 0
    gateway_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_start": self.week_start,
            "outcome": self.outcome,
            "settlement_status": self.settlement_status,
            "delta_cents": self.delta_cents,
            "amount_cents": self.amount_cents,
            "gateway_ref": self.gateway_ref,
            "error": self.error,
        }


@dataclass
class QueueRun:
    """Summary of a reconciliation queue pass."""
    dry_run: bool
    processed: int = 0
    refunds_issued: int = 0
    charges_issued: int = 0
    skipped: int = 0
    manual_review: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "processed": self.processed,
            "refunds_issued": self.refunds_issued,
            "charges_issued": self.charges_issued,
            "skipped": self.skipped,
            "manual_review": self.manual_review,
            "results": self.results,
            "failures": self.failures,
        }


class ReconciliationEngine:
    """Refunds (or, when enabled, tops up) worst-case charges after late syncs."""

    def __init__(
        self,
        policy: TimingPolicy,
        gateway: PaymentGateway,
        db: Optional[Database] = None,
        allow_adjustment_charges: Optional[bool] = None,
    ):
        self.policy = policy
        self.gateway = gateway
        self.db = db or get_database()
        self.allow_adjustment_charges = (
            allow_adjustment_charges if allow_adjustment_charges is not None else adjustment_charges_from_env()
        )

        self.commitments = CommitmentRepository(self.db)
        self.penalties = PenaltyRepository(self.db)
        self.payments = PaymentRepository(self.db)
        self.usage = UsageRepository(self.db)

    def reconcile(self, user_id: str, week_end: Any, new_actual_penalty_cents: int) -> ReconciliationResult:
        """
        Reconcile a worst-case-charged week against its late actual penalty.

        Raises:
            NotFoundError: no commitment for (user, week)
            ReconciliationAmbiguousError: positive delta that cannot be charged
            ConcurrentUpdateError: the row kept changing under us
        """
        week_end_iso = isoformat_utc(self.policy.resolve_week_target(week_end))
        commitment = self.commitments.get_for_user_week(user_id, week_end_iso)
        if commitment is None:
            raise NotFoundError(f"No commitment for user {user_id} week ending {week_end_iso}")

        in_flight = _InFlight()
        for _ in range(MAX_CAS_ATTEMPTS):
            penalty = self.penalties.get(user_id, commitment.week_start)
            if penalty is None:
                raise NotFoundError(f"No penalty row for user {user_id} week {commitment.week_start}")

            if penalty.settlement_status != SettlementStatus.CHARGED_WORST_CASE:
                logger.info(
                    "reconciliation_not_applicable",
                    user_id=user_id,
                    week_start=commitment.week_start,
                    status=penalty.settlement_status.value,
                )
                return self._result(penalty, ReconciliationOutcome.NOT_APPLICABLE)

            result = self._attempt(commitment, penalty, new_actual_penalty_cents, in_flight)
            if result is not None:
                return result
            if in_flight.delta_cents is not None:
                return self._record_in_flight(commitment, in_flight)

        raise ConcurrentUpdateError(f"Penalty row for {user_id}/{commitment.week_start} kept changing")

    def _record_in_flight(self, commitment: CommitmentRecord, in_flight: _InFlight) -> ReconciliationResult:
        """
        Record a movement the gateway executed but whose CAS lost.

        Each retry replays the same key and amount, so the gateway returns
        the original refund or charge. Competing reconciles are rejected at
        the gateway and write at most one detection each, so this settles
        within a bounded number of passes.
        """
        for _ in range(MAX_RECORD_ATTEMPTS):
            penalty = self.penalties.get(commitment.user_id, commitment.week_start)
            if penalty.settlement_status != SettlementStatus.CHARGED_WORST_CASE:
                # Only a replay of the same movement under the same key can have settled the row
                logger.info(
                    "reconciliation_recorded_by_racer",
                    user_id=penalty.user_id,
                    week_start=penalty.week_start,
                    delta_cents=in_flight.delta_cents,
                    status=penalty.settlement_status.value,
                )
                return self._result(penalty, ReconciliationOutcome.NOT_APPLICABLE, delta=in_flight.delta_cents)

            now = isoformat_utc(self.policy.now())
            if in_flight.delta_cents < 0:
                result = self._refund(
                    commitment, penalty, -in_flight.delta_cents, in_flight.capped_cents, now, in_flight
                )
            else:
                result = self._charge_adjustment(
                    commitment, penalty, in_flight.delta_cents, in_flight.capped_cents, now, in_flight
                )
            if result is not None:
                if result.outcome == ReconciliationOutcome.GATEWAY_TRANSIENT:
                    logger.error(
                        "reconciliation_movement_unrecorded",
                        user_id=commitment.user_id,
                        week_start=commitment.week_start,
                        delta_cents=in_flight.delta_cents,
                        error=result.error,
                    )
                return result

        logger.error(
            "reconciliation_movement_unrecorded",
            user_id=commitment.user_id,
            week_start=commitment.week_start,
            delta_cents=in_flight.delta_cents,
        )
        raise ConcurrentUpdateError(
            f"Executed movement of {in_flight.delta_cents} for {commitment.user_id}/{commitment.week_start} "
            "could not be recorded"
        )

    def _attempt(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        new_actual_penalty_cents: int,
        in_flight: _InFlight,
    ) -> Optional[ReconciliationResult]:
        now = isoformat_utc(self.policy.now())
        capped = min(new_actual_penalty_cents, commitment.max_charge_cents)
        delta = capped - penalty.charged_amount_cents

        if delta == 0:
            with self.db.transaction() as tx:
                won = self.penalties.compare_and_set(
                    tx, penalty.user_id, penalty.week_start, penalty.version,
                    needs_reconciliation=False,
                    reconciliation_delta_cents=0,
                    actual_amount_cents=capped,
                )
            if not won:
                return None
            logger.info("reconciliation_no_change", user_id=penalty.user_id, week_start=penalty.week_start)
            return self._result(penalty, ReconciliationOutcome.NO_CHANGE, capped=capped)

        reason = REASON_LATE_SYNC_LOWER if delta < 0 else REASON_LATE_SYNC_HIGHER
        penalty = self._record_detection(penalty, delta, reason, capped, now)
        if penalty is None:
            return None

        if delta < 0:
            return self._refund(commitment, penalty, -delta, capped, now, in_flight)
        return self._charge_adjustment(commitment, penalty, delta, capped, now, in_flight)

    def _record_detection(
        self,
        penalty: UserWeekPenaltyRecord,
        delta: int,
        reason: str,
        capped: int,
        now: str,
    ) -> Optional[UserWeekPenaltyRecord]:
        """Persist the unresolved delta before any money moves."""
        if (
            penalty.needs_reconciliation
            and penalty.reconciliation_delta_cents == delta
            and penalty.reconciliation_reason == reason
        ):
            return penalty

        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, penalty.user_id, penalty.week_start, penalty.version,
                needs_reconciliation=True,
                reconciliation_delta_cents=delta,
                reconciliation_reason=reason,
                reconciliation_detected_at=now,
                actual_amount_cents=capped,
            )
        if not won:
            return None

        logger.info(
            "reconciliation_delta_detected",
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            delta_cents=delta,
            reason=reason,
        )
        return self.penalties.get(penalty.user_id, penalty.week_start)

    def _refund(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        refund_cents: int,
        capped: int,
        now: str,
        in_flight: _InFlight,
    ) -> Optional[ReconciliationResult]:
        delta = -refund_cents
        full = refund_cents == penalty.charged_amount_cents
        target = SettlementStatus.REFUNDED if full else SettlementStatus.REFUNDED_PARTIAL
        validate_transition(penalty.settlement_status, target)

        key = idempotency_key(penalty.user_id, commitment.week_end, ChargeType.REFUND)
        try:
            refund = self.gateway.refund(
                gateway_ref=penalty.charge_gateway_ref,
                amount_cents=refund_cents,
                idempotency_key=key,
                metadata={
                    "user_id": penalty.user_id,
                    "week_end": commitment.week_end,
                    "charge_type": ChargeType.REFUND.value,
                },
            )
        except GatewayTransientError as e:
            logger.warning("reconciliation_refund_transient", user_id=penalty.user_id, error=str(e))
            return self._result(penalty, ReconciliationOutcome.GATEWAY_TRANSIENT, delta=delta, error=str(e))
        except GatewayRejectedError as e:
            return self._record_rejection(penalty, delta, e)

        in_flight.delta_cents = delta
        in_flight.capped_cents = capped
        payment = PaymentRecord(
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            amount_cents=refund_cents,
            payment_type=PaymentType.PENALTY_REFUND.value,
            status=refund.status,
            gateway_ref=refund.gateway_ref,
            related_gateway_ref=penalty.charge_gateway_ref,
            idempotency_key=key,
            created_at=now,
        )
        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, penalty.user_id, penalty.week_start, penalty.version,
                settlement_status=target,
                charged_amount_cents=penalty.charged_amount_cents - refund_cents,
                actual_amount_cents=capped,
                refund_amount_cents=penalty.refund_amount_cents + refund_cents,
                refund_issued_at=now,
                refund_gateway_ref=refund.gateway_ref,
                needs_reconciliation=False,
                reconciliation_delta_cents=0,
                failure_reason=None,
            )
            if won:
                self.payments.insert(payment, tx)
        if not won:
            return None

        self.commitments.update_status(commitment.id, target.value)
        logger.info(
            "reconciliation_refunded",
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            refund_cents=refund_cents,
            status=target.value,
        )
        outcome = ReconciliationOutcome.REFUNDED if full else ReconciliationOutcome.REFUNDED_PARTIAL
        return ReconciliationResult(
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            outcome=outcome,
            settlement_status=target.value,
            delta_cents=delta,
            amount_cents=refund_cents,
            gateway_ref=refund.gateway_ref,
        )

    def _charge_adjustment(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        delta: int,
        capped: int,
        now: str,
        in_flight: _InFlight,
    ) -> Optional[ReconciliationResult]:
        if not self.allow_adjustment_charges:
            logger.warning(
                "reconciliation_manual_review",
                user_id=penalty.user_id,
                week_start=penalty.week_start,
                delta_cents=delta,
            )
            raise ReconciliationAmbiguousError(
                penalty.user_id, penalty.week_start, delta, "adjustment charges are disabled"
            )
        if penalty.charged_amount_cents + delta > commitment.max_charge_cents:
            raise ReconciliationAmbiguousError(
                penalty.user_id, penalty.week_start, delta, "adjustment would exceed the weekly cap"
            )
        if not commitment.customer_ref or not commitment.saved_payment_method_ref:
            raise ReconciliationAmbiguousError(
                penalty.user_id, penalty.week_start, delta, "no saved payment method"
            )

        target = validate_transition(penalty.settlement_status, SettlementStatus.CHARGED_ACTUAL_ADJUSTED)
        key = idempotency_key(penalty.user_id, commitment.week_end, ChargeType.ACTUAL_ADJUSTED)
        try:
            charge = self.gateway.charge(
                customer_ref=commitment.customer_ref,
                amount_cents=delta,
                idempotency_key=key,
                payment_method_ref=commitment.saved_payment_method_ref,
                metadata={
                    "user_id": penalty.user_id,
                    "week_end": commitment.week_end,
                    "charge_type": ChargeType.ACTUAL_ADJUSTED.value,
                },
            )
        except GatewayTransientError as e:
            logger.warning("reconciliation_charge_transient", user_id=penalty.user_id, error=str(e))
            return self._result(penalty, ReconciliationOutcome.GATEWAY_TRANSIENT, delta=delta, error=str(e))
        except GatewayRejectedError as e:
            return self._record_rejection(penalty, delta, e)

        in_flight.delta_cents = delta
        in_flight.capped_cents = capped
        payment = PaymentRecord(
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            amount_cents=delta,
            payment_type=PaymentType.PENALTY_ACTUAL_ADJUSTED.value,
            status=charge.status,
            gateway_ref=charge.gateway_ref,
            related_gateway_ref=penalty.charge_gateway_ref,
            idempotency_key=key,
            created_at=now,
        )
        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, penalty.user_id, penalty.week_start, penalty.version,
                settlement_status=target,
                charged_amount_cents=penalty.charged_amount_cents + delta,
                actual_amount_cents=capped,
                needs_reconciliation=False,
                reconciliation_delta_cents=0,
                failure_reason=None,
            )
            if won:
                self.payments.insert(payment, tx)
        if not won:
            return None

        self.commitments.update_status(commitment.id, target.value)
        logger.info(
            "reconciliation_adjustment_charged",
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            amount_cents=delta,
        )
        return ReconciliationResult(
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            outcome=ReconciliationOutcome.CHARGED_ADJUSTMENT,
            settlement_status=target.value,
            delta_cents=delta,
            amount_cents=delta,
            gateway_ref=charge.gateway_ref,
        )

    def _record_rejection(
        self,
        penalty: UserWeekPenaltyRecord,
        delta: int,
        error: GatewayRejectedError,
    ) -> Optional[ReconciliationResult]:
        """A rejected refund or top-up stays flagged for the queue or an operator."""
        reason = str(error)
        if error.code == IDEMPOTENCY_REUSED_CODE:
            # Another reconcile already moved this week's money under the key
            # with a different amount; it owns the row and will record it.
            logger.warning(
                "reconciliation_superseded",
                user_id=penalty.user_id,
                week_start=penalty.week_start,
                delta_cents=delta,
            )
            return self._result(penalty, ReconciliationOutcome.GATEWAY_REJECTED, delta=delta, error=reason)

        logger.error(
            "reconciliation_gateway_rejected",
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            delta_cents=delta,
            reason=reason,
        )
        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, penalty.user_id, penalty.week_start, penalty.version,
                failure_reason=reason,
            )
        if not won:
            return None
        return self._result(penalty, ReconciliationOutcome.GATEWAY_REJECTED, delta=delta, error=reason)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def process_queue(
        self,
        limit: int = DEFAULT_QUEUE_LIMIT,
        week_end: Optional[Any] = None,
        user_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> QueueRun:
        """
        Retry flagged rows whose late actual has already been detected.

        Worst-case rows still waiting for their first late sync are left
        alone; the pre-deadline total is not evidence of actual usage.
        """
        limit = max(1, min(int(limit or DEFAULT_QUEUE_LIMIT), MAX_QUEUE_LIMIT))
        week_start = None
        if week_end:
            week_start = isoformat_utc(self.policy.week_start(self.policy.resolve_week_target(week_end)))

        run = QueueRun(dry_run=dry_run)
        rows = self.penalties.list_needing_reconciliation(
            limit=limit, week_start=week_start, user_id=user_id, detected_only=True
        )
        logger.info("reconciliation_queue_started", rows=len(rows), dry_run=dry_run)

        for row in rows:
            run.processed += 1
            commitment = self.commitments.get_for_user_week(row.user_id, row.week_end)
            if commitment is None:
                run.skipped += 1
                run.failures.append({"user_id": row.user_id, "week_start": row.week_start, "error": "commitment not found"})
                continue

            new_actual = self.usage.sum_penalty(commitment.id)

            if dry_run:
                capped = min(new_actual, commitment.max_charge_cents)
                run.results.append({
                    "user_id": row.user_id,
                    "week_start": row.week_start,
                    "settlement_status": row.settlement_status.value,
                    "charged_amount_cents": row.charged_amount_cents,
                    "actual_amount_cents": capped,
                    "delta_cents": capped - row.charged_amount_cents,
                })
                continue

            try:
                result = self.reconcile(row.user_id, row.week_end, new_actual)
            except ReconciliationAmbiguousError as e:
                run.manual_review += 1
                run.failures.append({"user_id": row.user_id, "week_start": row.week_start, "error": str(e)})
                continue
            except ConcurrentUpdateError as e:
                run.failures.append({"user_id": row.user_id, "week_start": row.week_start, "error": str(e)})
                continue

            run.results.append(result.to_dict())
            if result.outcome in (ReconciliationOutcome.REFUNDED, ReconciliationOutcome.REFUNDED_PARTIAL):
                run.refunds_issued += 1
            elif result.outcome == ReconciliationOutcome.CHARGED_ADJUSTMENT:
                run.charges_issued += 1
            elif result.outcome in (ReconciliationOutcome.GATEWAY_TRANSIENT, ReconciliationOutcome.GATEWAY_REJECTED):
                run.failures.append({"user_id": row.user_id, "week_start": row.week_start, "error": result.error})
            else:
                run.skipped += 1

        logger.info(
            "reconciliation_queue_complete",
            processed=run.processed,
            refunds_issued=run.refunds_issued,
            charges_issued=run.charges_issued,
            failures=len(run.failures),
            dry_run=dry_run,
        )
        return run

    def _result(
        self,
        penalty: UserWeekPenaltyRecord,
        outcome: str,
        delta: int = 0,
        capped: int = 0,
        error: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            user_id=penalty.user_id,
            week_start=penalty.week_start,
            outcome=outcome,
            settlement_status=penalty.settlement_status.value,
            delta_cents=delta,
            amount_cents=capped,
            error=error,
        )
