"""
Usage Sync

Client-facing entry point for daily usage reports. Writes through the
ledger, and when the week was already charged at the worst case, hands
the new total to the reconciliation engine.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import structlog

from ..core.exceptions import (
    ConcurrentUpdateError,
    NotFoundError,
    ReconciliationAmbiguousError,
)
from ..core.status import SettlementStatus
from ..core.timing import TimingPolicy
from ..persistence.database import Database, get_database
from ..persistence.repository import CommitmentRepository, PenaltyRepository
from .ledger import UsageLedger
from .reconciliation import ReconciliationEngine, ReconciliationOutcome

logger = structlog.get_logger()


class UsageSyncService:
    """Records a day of usage and triggers reconciliation when needed."""

    def __init__(
        self,
        policy: TimingPolicy,
        reconciliation: ReconciliationEngine,
        db: Optional[Database] = None,
    ):
        self.policy = policy
        self.db = db or get_database()
        self.reconciliation = reconciliation
        self.ledger = UsageLedger(policy, self.db)
        self.commitments = CommitmentRepository(self.db)
        self.penalties = PenaltyRepository(self.db)

    def sync_usage(
        self,
        user_id: str,
        commitment_id: str,
        usage_date: Any,
        used_minutes: float,
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record usage for one day.

        Returns the day's exceeded minutes and penalty, the week's running
        total, the settlement status and, if one ran, the reconciliation result.
        """
        commitment = self.commitments.get(commitment_id)
        if commitment is None or commitment.user_id != user_id:
            raise NotFoundError(f"Commitment {commitment_id} not found for user {user_id}")

        entry = self.ledger.record_usage(
            user_id=user_id,
            commitment_id=commitment_id,
            usage_date=usage_date,
            used_minutes=used_minutes,
            limit_minutes=commitment.limit_minutes,
            penalty_per_minute_cents=commitment.penalty_per_minute_cents,
            timestamp=timestamp,
        )
        penalty = self.penalties.get(user_id, commitment.week_start)

        reconciliation = None
        if penalty.settlement_status == SettlementStatus.CHARGED_WORST_CASE:
            try:
                reconciliation = self.reconciliation.reconcile(
                    user_id, commitment.week_end, penalty.total_penalty_cents
                ).to_dict()
            except ReconciliationAmbiguousError as e:
                reconciliation = {
                    "outcome": ReconciliationOutcome.MANUAL_REVIEW,
                    "delta_cents": e.delta_cents,
                    "error": str(e),
                }
            except ConcurrentUpdateError as e:
                # Retried by the next sync or queue pass
                logger.warning("sync_reconciliation_contended", user_id=user_id, error=str(e))
                reconciliation = {"outcome": "deferred", "error": str(e)}
            penalty = self.penalties.get(user_id, commitment.week_start)

        return {
            "date": entry.date,
            "used_minutes": entry.used_minutes,
            "exceeded_minutes": entry.exceeded_minutes,
            "penalty_cents": entry.penalty_cents,
            "week_total_penalty_cents": penalty.total_penalty_cents,
            "settlement_status": penalty.settlement_status.value,
            "reconciliation": reconciliation,
        }
