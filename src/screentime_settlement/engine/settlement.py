"""
Settlement Engine

Decides, for every commitment of a week, whether to charge the actual
penalty, the worst-case cap, or nothing. Safe to run repeatedly and
concurrently for the same week:

1. Rows already settled are skipped.
2. Nothing happens before the commitment's grace window closes.
3. Revoked monitoring is backfilled with estimated usage first.
4. The actual total counts only if it was synced after the deadline and
   no later than grace expiry. Otherwise the worst case is charged and
   the row is flagged for reconciliation. If post-deadline usage is
   already in the ledger, the row goes straight onto the reconciliation
   queue.
5. Every status change is a compare-and-swap on the row's version, in the
   same transaction as the payment insert. Gateway calls carry an
   idempotency key derived from (user, week_end, charge type), so a
   racing or retried run reuses the original charge.

A failure for one commitment never aborts the batch.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import structlog

from ..billing.gateway import (
    GatewayBelowMinimumError,
    GatewayRejectedError,
    GatewayTransientError,
    PaymentGateway,
)
from ..core.exceptions import ConcurrentUpdateError
from ..core.status import (
    ChargeType,
    MonitoringStatus,
    PaymentType,
    SettlementStatus,
    validate_transition,
)
from ..core.timing import TimingPolicy, isoformat_utc, parse_timestamp
from ..persistence.database import Database, get_database
from ..persistence.models import CommitmentRecord, PaymentRecord, UserWeekPenaltyRecord
from ..persistence.repository import CommitmentRepository, PaymentRepository, PenaltyRepository
from .estimator import RevocationEstimator
from .ledger import PenaltyAggregator

logger = structlog.get_logger()

DEFAULT_PROCESSOR_MINIMUM_CENTS = 60

# Re-read/decide attempts before a row is reported as contended
MAX_CAS_ATTEMPTS = 3

# Post-deadline usage that reached the ledger without being settled on
REASON_LATE_SYNC_UNSETTLED = "late_sync_before_settlement"


def processor_minimum_from_env() -> int:
    return int(os.environ.get("PROCESSOR_MINIMUM_CENTS", DEFAULT_PROCESSOR_MINIMUM_CENTS))


def idempotency_key(user_id: str, week_end: str, charge_type: ChargeType, suffix: Optional[str] = None) -> str:
    """Gateway idempotency key for one money movement of a (user, week)."""
    key = f"{user_id}:{week_end}:{charge_type.value}"
    if suffix:
        key = f"{key}:{suffix}"
    return key


class SettlementOutcome:
    """Per-commitment result labels reported by a settlement run."""
    ALREADY_SETTLED = "already_settled"
    GRACE_NOT_EXPIRED = "grace_not_expired"
    MISSING_PAYMENT_METHOD = "missing_payment_method"
    NO_CHARGE = "no_charge"
    BELOW_MINIMUM = "below_minimum"
    CHARGED_ACTUAL = "charged_actual"
    CHARGED_WORST_CASE = "charged_worst_case"
    CHARGE_FAILED = "charge_failed"
    GATEWAY_TRANSIENT = "gateway_transient"
    CONFLICT = "conflict"

    FAILURES = frozenset({MISSING_PAYMENT_METHOD, CHARGE_FAILED, GATEWAY_TRANSIENT, CONFLICT})


@dataclass
class CommitmentSettlement:
    """What happened to one commitment in a run."""
    commitment_id: str
    user_id: str
    outcome: str
    settlement_status: str
    amount_cents: int = 0
    gateway_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.outcome in SettlementOutcome.FAILURES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commitment_id": self.commitment_id,
            "user_id": self.user_id,
            "outcome": self.outcome,
            "settlement_status": self.settlement_status,
            "amount_cents": self.amount_cents,
            "gateway_ref": self.gateway_ref,
            "error": self.error,
        }


@dataclass
class SettlementRun:
    """Results of one settle() call."""
    week_end: str
    week_start: str
    results: List[CommitmentSettlement] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_commitments": len(self.results),
            "grace_not_expired": self.count(SettlementOutcome.GRACE_NOT_EXPIRED),
            "already_settled": self.count(SettlementOutcome.ALREADY_SETTLED),
            "missing_payment_method": self.count(SettlementOutcome.MISSING_PAYMENT_METHOD),
            "no_charge": self.count(SettlementOutcome.NO_CHARGE),
            "below_minimum": self.count(SettlementOutcome.BELOW_MINIMUM),
            "charged_actual": self.count(SettlementOutcome.CHARGED_ACTUAL),
            "charged_worst_case": self.count(SettlementOutcome.CHARGED_WORST_CASE),
            "failures": sum(1 for r in self.results if r.is_failure),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_end": self.week_end,
            "week_start": self.week_start,
            "summary": self.summary,
            "results": [r.to_dict() for r in self.results],
        }


class SettlementEngine:
    """
    Weekly settlement state machine.

    Usage:
        engine = SettlementEngine(TimingPolicy.production(), gateway=StripeGateway())
        run = engine.settle()          # most recently completed week
        run = engine.settle(week_end)  # explicit week
    """

    def __init__(
        self,
        policy: TimingPolicy,
        gateway: PaymentGateway,
        db: Optional[Database] = None,
        processor_minimum_cents: Optional[int] = None,
    ):
        self.policy = policy
        self.gateway = gateway
        self.db = db or get_database()
        self.processor_minimum_cents = (
            processor_minimum_cents if processor_minimum_cents is not None else processor_minimum_from_env()
        )

        self.commitments = CommitmentRepository(self.db)
        self.penalties = PenaltyRepository(self.db)
        self.payments = PaymentRepository(self.db)
        self.aggregator = PenaltyAggregator(policy, self.db)
        self.estimator = RevocationEstimator(policy, self.db)

    def settle(self, week_end: Optional[Any] = None) -> SettlementRun:
        """Settle every commitment whose deadline is week_end."""
        target = self.policy.resolve_week_target(week_end)
        week_end_iso = isoformat_utc(target)
        run = SettlementRun(
            week_end=week_end_iso,
            week_start=isoformat_utc(self.policy.week_start(target)),
        )
        now = self.policy.now()

        commitments = self.commitments.list_for_week(week_end_iso)
        logger.info("settlement_run_started", week_end=week_end_iso, commitments=len(commitments))

        for commitment in commitments:
            try:
                result = self._settle_commitment(commitment, now)
            except ConcurrentUpdateError as e:
                logger.warning("settlement_contended", commitment_id=commitment.id, error=str(e))
                result = self._result(commitment, SettlementOutcome.CONFLICT, None, error=str(e))
            run.results.append(result)

        logger.info("settlement_run_complete", week_end=week_end_iso, **run.summary)
        return run

    # ------------------------------------------------------------------
    # Per-commitment decision
    # ------------------------------------------------------------------

    def _settle_commitment(self, commitment: CommitmentRecord, now: datetime) -> CommitmentSettlement:
        penalty = self.penalties.ensure(commitment.user_id, commitment.week_start, commitment.week_end)

        if penalty.settlement_status.is_settled:
            return self._result(commitment, SettlementOutcome.ALREADY_SETTLED, penalty)

        if now < parse_timestamp(commitment.grace_expires_at):
            return self._result(commitment, SettlementOutcome.GRACE_NOT_EXPIRED, penalty)

        if commitment.monitoring_status == MonitoringStatus.REVOKED:
            if self.estimator.estimate(commitment):
                self.aggregator.recompute(commitment.user_id, commitment.id, stamp=False)

        for _ in range(MAX_CAS_ATTEMPTS):
            penalty = self.penalties.get(commitment.user_id, commitment.week_start)
            if penalty.settlement_status.is_settled:
                return self._result(commitment, SettlementOutcome.ALREADY_SETTLED, penalty)

            result = self._attempt(commitment, penalty, now)
            if result is not None:
                return result

        raise ConcurrentUpdateError(
            f"Penalty row for {commitment.user_id}/{commitment.week_start} kept changing"
        )

    def decide(self, commitment: CommitmentRecord, penalty: UserWeekPenaltyRecord) -> Tuple[SettlementStatus, int]:
        """Return the target status and amount for a pending row."""
        known = self.policy.is_known_in_time(
            penalty.last_updated, commitment.week_end, commitment.grace_expires_at
        )
        if known:
            amount = min(penalty.total_penalty_cents, commitment.max_charge_cents)
            target = SettlementStatus.CHARGED_ACTUAL
        else:
            amount = commitment.max_charge_cents
            target = SettlementStatus.CHARGED_WORST_CASE

        if amount == 0:
            return SettlementStatus.NO_CHARGE, 0
        if amount < self.processor_minimum_cents:
            return SettlementStatus.BELOW_MINIMUM, amount
        return target, amount

    def _attempt(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        now: datetime,
    ) -> Optional[CommitmentSettlement]:
        """One read-decide-write pass. Returns None when the CAS lost."""
        target, amount = self.decide(commitment, penalty)
        validate_transition(penalty.settlement_status, target)

        if target in (SettlementStatus.NO_CHARGE, SettlementStatus.BELOW_MINIMUM):
            return self._record_without_charge(commitment, penalty, target, amount)

        if not commitment.customer_ref or not commitment.saved_payment_method_ref:
            logger.warning(
                "settlement_missing_payment_method",
                commitment_id=commitment.id,
                user_id=commitment.user_id,
            )
            return self._result(
                commitment, SettlementOutcome.MISSING_PAYMENT_METHOD, penalty,
                error="No saved payment method",
            )

        charge_type = ChargeType.ACTUAL if target == SettlementStatus.CHARGED_ACTUAL else ChargeType.WORST_CASE
        # A retry after a rejection needs a fresh key or the gateway replays the decline
        suffix = f"v{penalty.version}" if penalty.settlement_status == SettlementStatus.CHARGE_FAILED else None
        key = idempotency_key(commitment.user_id, commitment.week_end, charge_type, suffix)

        try:
            charge = self.gateway.charge(
                customer_ref=commitment.customer_ref,
                amount_cents=amount,
                idempotency_key=key,
                payment_method_ref=commitment.saved_payment_method_ref,
                metadata={
                    "user_id": commitment.user_id,
                    "commitment_id": commitment.id,
                    "week_end": commitment.week_end,
                    "charge_type": charge_type.value,
                },
            )
        except GatewayBelowMinimumError:
            return self._record_without_charge(commitment, penalty, SettlementStatus.BELOW_MINIMUM, amount)
        except GatewayRejectedError as e:
            return self._record_failure(commitment, penalty, str(e))
        except GatewayTransientError as e:
            logger.warning(
                "settlement_gateway_transient",
                commitment_id=commitment.id,
                user_id=commitment.user_id,
                error=str(e),
            )
            return self._result(commitment, SettlementOutcome.GATEWAY_TRANSIENT, penalty, error=str(e))

        fields: Dict[str, Any] = {
            "settlement_status": target,
            "charged_amount_cents": amount,
            "charged_at": isoformat_utc(now),
            "charge_gateway_ref": charge.gateway_ref,
            "failure_reason": None,
        }
        if target == SettlementStatus.CHARGED_WORST_CASE:
            fields["actual_amount_cents"] = 0
            fields["needs_reconciliation"] = True
            payment_type = PaymentType.PENALTY_WORST_CASE
        else:
            fields["actual_amount_cents"] = amount
            payment_type = PaymentType.PENALTY_ACTUAL

        payment = PaymentRecord(
            user_id=commitment.user_id,
            week_start=commitment.week_start,
            amount_cents=amount,
            payment_type=payment_type.value,
            status=charge.status,
            gateway_ref=charge.gateway_ref,
            idempotency_key=key,
            created_at=isoformat_utc(now),
        )

        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, commitment.user_id, commitment.week_start, penalty.version, **fields
            )
            if won:
                self.payments.insert(payment, tx)

        if not won:
            self._release_orphan_charge(commitment, charge.gateway_ref, amount, key)
            return None

        self.commitments.update_status(commitment.id, target.value)
        logger.info(
            "settlement_charged",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            status=target.value,
            amount_cents=amount,
            gateway_ref=charge.gateway_ref,
        )
        if target == SettlementStatus.CHARGED_WORST_CASE:
            self._flag_unsettled_usage(commitment, now)

        outcome = (
            SettlementOutcome.CHARGED_WORST_CASE
            if target == SettlementStatus.CHARGED_WORST_CASE
            else SettlementOutcome.CHARGED_ACTUAL
        )
        return CommitmentSettlement(
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            outcome=outcome,
            settlement_status=target.value,
            amount_cents=amount,
            gateway_ref=charge.gateway_ref,
        )

    def _record_without_charge(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        target: SettlementStatus,
        amount: int,
    ) -> Optional[CommitmentSettlement]:
        validate_transition(penalty.settlement_status, target)
        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, commitment.user_id, commitment.week_start, penalty.version,
                settlement_status=target,
                charged_amount_cents=0,
                actual_amount_cents=amount,
                failure_reason=None,
            )
        if not won:
            return None

        self.commitments.update_status(commitment.id, target.value)
        logger.info(
            "settlement_not_charged",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            status=target.value,
            amount_cents=amount,
        )
        outcome = SettlementOutcome.NO_CHARGE if target == SettlementStatus.NO_CHARGE else SettlementOutcome.BELOW_MINIMUM
        return CommitmentSettlement(
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            outcome=outcome,
            settlement_status=target.value,
            amount_cents=amount,
        )

    def _record_failure(
        self,
        commitment: CommitmentRecord,
        penalty: UserWeekPenaltyRecord,
        reason: str,
    ) -> Optional[CommitmentSettlement]:
        logger.error(
            "settlement_charge_rejected",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            reason=reason,
        )
        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, commitment.user_id, commitment.week_start, penalty.version,
                settlement_status=SettlementStatus.CHARGE_FAILED,
                failure_reason=reason,
            )
        if not won:
            return None
        return CommitmentSettlement(
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            outcome=SettlementOutcome.CHARGE_FAILED,
            settlement_status=SettlementStatus.CHARGE_FAILED.value,
            error=reason,
        )

    def _flag_unsettled_usage(self, commitment: CommitmentRecord, now: datetime) -> None:
        """
        Queue a worst-case row for reconciliation when the ledger already
        holds post-deadline usage.

        Usage can land after grace but before the run (the sync saw
        `pending` and had nothing to reconcile), or between our read and
        our CAS. Either way the sync will not come back, so the detection
        time is stamped here and process_queue() picks the row up.
        """
        current = self.penalties.get(commitment.user_id, commitment.week_start)
        if current is None or current.settlement_status != SettlementStatus.CHARGED_WORST_CASE:
            return
        if current.reconciliation_detected_at or not current.last_updated:
            return
        if parse_timestamp(current.last_updated) <= parse_timestamp(commitment.week_end):
            return

        with self.db.transaction() as tx:
            won = self.penalties.compare_and_set(
                tx, commitment.user_id, commitment.week_start, current.version,
                reconciliation_detected_at=isoformat_utc(now),
                reconciliation_reason=REASON_LATE_SYNC_UNSETTLED,
            )
        # A lost CAS means a reconcile already owns the row
        if won:
            logger.info(
                "settlement_late_usage_flagged",
                commitment_id=commitment.id,
                user_id=commitment.user_id,
                last_updated=current.last_updated,
                total_penalty_cents=current.total_penalty_cents,
            )

    def _release_orphan_charge(self, commitment: CommitmentRecord, gateway_ref: str, amount: int, key: str) -> None:
        """
        Refund a charge whose CAS lost, unless the winner recorded the same
        charge (the gateway replayed it under the shared key).
        """
        current = self.penalties.get(commitment.user_id, commitment.week_start)
        if current is not None and current.charge_gateway_ref == gateway_ref:
            return
        logger.warning(
            "settlement_orphan_charge",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            gateway_ref=gateway_ref,
            amount_cents=amount,
        )
        try:
            self.gateway.refund(gateway_ref, amount, f"{key}:release")
        except (GatewayRejectedError, GatewayTransientError) as e:
            logger.error(
                "settlement_orphan_charge_refund_failed",
                commitment_id=commitment.id,
                gateway_ref=gateway_ref,
                error=str(e),
            )

    def _result(
        self,
        commitment: CommitmentRecord,
        outcome: str,
        penalty: Optional[UserWeekPenaltyRecord],
        error: Optional[str] = None,
    ) -> CommitmentSettlement:
        return CommitmentSettlement(
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            outcome=outcome,
            settlement_status=(penalty.settlement_status.value if penalty else SettlementStatus.PENDING.value),
            amount_cents=penalty.charged_amount_cents if penalty else 0,
            error=error,
        )
