"""
Repository Layer for the Settlement Engine

Provides CRUD operations for all persisted entities. Methods that take part
in a compare-and-swap accept an optional Transaction so the status update and
the payment insert commit together.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import structlog

from ..core.status import MonitoringStatus, PoolStatus
from .database import Database, Transaction, get_database
from .models import (
    CommitmentRecord,
    DailyUsageRecord,
    PaymentRecord,
    UserWeekPenaltyRecord,
    WeeklyPoolRecord,
)

logger = structlog.get_logger()


class _Repository:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _run(self, query: str, params: tuple = (), tx: Optional[Transaction] = None) -> List[Dict[str, Any]]:
        if tx is not None:
            return tx.execute(query, params)
        return self.db.execute(query, params)


class CommitmentRepository(_Repository):
    """Repository for commitments."""

    def create(self, commitment: CommitmentRecord) -> CommitmentRecord:
        """Create a new commitment."""
        self.db.execute(
            """INSERT INTO commitments
               (id, user_id, week_start, week_end, grace_expires_at, limit_minutes,
                penalty_per_minute_cents, max_charge_cents, apps_to_limit,
                monitoring_status, monitoring_revoked_at, status,
                saved_payment_method_ref, customer_ref, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            commitment.to_db_tuple()
        )
        logger.info(
            "commitment_created",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            week_end=commitment.week_end,
            max_charge_cents=commitment.max_charge_cents,
        )
        return commitment

    def get(self, commitment_id: str) -> Optional[CommitmentRecord]:
        """Get a commitment by ID."""
        results = self.db.execute(
            "SELECT * FROM commitments WHERE id = ?",
            (commitment_id,)
        )
        return CommitmentRecord.from_row(results[0]) if results else None

    def list_for_week(self, week_end: str) -> List[CommitmentRecord]:
        """All commitments whose deadline is week_end."""
        results = self.db.execute(
            "SELECT * FROM commitments WHERE week_end = ? ORDER BY created_at",
            (week_end,)
        )
        return [CommitmentRecord.from_row(r) for r in results]

    def get_for_user_week(self, user_id: str, week_end: str) -> Optional[CommitmentRecord]:
        """Most recent commitment a user made for a week."""
        results = self.db.execute(
            "SELECT * FROM commitments WHERE user_id = ? AND week_end = ? ORDER BY created_at DESC LIMIT 1",
            (user_id, week_end)
        )
        return CommitmentRecord.from_row(results[0]) if results else None

    def mark_monitoring_revoked(self, commitment_id: str, revoked_at: str) -> bool:
        """Flip monitoring ok -> revoked. Returns False if already revoked."""
        with self.db.transaction() as tx:
            tx.execute(
                """UPDATE commitments
                   SET monitoring_status = ?, monitoring_revoked_at = ?
                   WHERE id = ? AND monitoring_status = ?""",
                (MonitoringStatus.REVOKED.value, revoked_at, commitment_id, MonitoringStatus.OK.value)
            )
            changed = tx.rowcount > 0
        if changed:
            logger.info("monitoring_revoked", commitment_id=commitment_id, revoked_at=revoked_at)
        return changed

    def update_status(self, commitment_id: str, status: str) -> None:
        self.db.execute(
            "UPDATE commitments SET status = ? WHERE id = ?",
            (status, commitment_id)
        )


class UsageRepository(_Repository):
    """Repository for daily usage entries."""

    def upsert(self, entry: DailyUsageRecord) -> DailyUsageRecord:
        """Insert or overwrite the entry for (user, date, commitment)."""
        self.db.execute(
            """INSERT INTO daily_usage
               (id, user_id, commitment_id, date, used_minutes, limit_minutes,
                exceeded_minutes, penalty_cents, is_estimated, source, reported_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, date, commitment_id) DO UPDATE SET
                used_minutes = excluded.used_minutes,
                limit_minutes = excluded.limit_minutes,
                exceeded_minutes = excluded.exceeded_minutes,
                penalty_cents = excluded.penalty_cents,
                is_estimated = excluded.is_estimated,
                source = excluded.source,
                reported_at = excluded.reported_at""",
            entry.to_db_tuple()
        )
        return self.get(entry.user_id, entry.commitment_id, entry.date) or entry

    def insert_if_absent(self, entry: DailyUsageRecord) -> bool:
        """Insert only when no entry exists for the day. Returns True if inserted."""
        with self.db.transaction() as tx:
            tx.execute(
                """INSERT INTO daily_usage
                   (id, user_id, commitment_id, date, used_minutes, limit_minutes,
                    exceeded_minutes, penalty_cents, is_estimated, source, reported_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (user_id, date, commitment_id) DO NOTHING""",
                entry.to_db_tuple()
            )
            return tx.rowcount > 0

    def get(self, user_id: str, commitment_id: str, day: str) -> Optional[DailyUsageRecord]:
        results = self.db.execute(
            "SELECT * FROM daily_usage WHERE user_id = ? AND commitment_id = ? AND date = ?",
            (user_id, commitment_id, day)
        )
        return DailyUsageRecord.from_row(results[0]) if results else None

    def list_for_commitment(self, commitment_id: str) -> List[DailyUsageRecord]:
        results = self.db.execute(
            "SELECT * FROM daily_usage WHERE commitment_id = ? ORDER BY date",
            (commitment_id,)
        )
        return [DailyUsageRecord.from_row(r) for r in results]

    def sum_penalty(self, commitment_id: str) -> int:
        results = self.db.execute(
            "SELECT COALESCE(SUM(penalty_cents), 0) AS total FROM daily_usage WHERE commitment_id = ?",
            (commitment_id,)
        )
        return int(results[0]["total"]) if results else 0


class PenaltyRepository(_Repository):
    """Repository for UserWeekPenalty rows."""

    # Columns a compare-and-swap may write
    MUTABLE_FIELDS = frozenset({
        "total_penalty_cents",
        "actual_amount_cents",
        "charged_amount_cents",
        "settlement_status",
        "needs_reconciliation",
        "reconciliation_delta_cents",
        "reconciliation_reason",
        "reconciliation_detected_at",
        "refund_amount_cents",
        "charged_at",
        "refund_issued_at",
        "charge_gateway_ref",
        "refund_gateway_ref",
        "failure_reason",
    })

    def ensure(self, user_id: str, week_start: str, week_end: str) -> UserWeekPenaltyRecord:
        """Create the pending row for (user, week) if it does not exist."""
        self.db.execute(
            """INSERT INTO user_week_penalties (user_id, week_start, week_end)
               VALUES (?, ?, ?)
               ON CONFLICT (user_id, week_start) DO NOTHING""",
            (user_id, week_start, week_end)
        )
        return self.get(user_id, week_start)

    def get(self, user_id: str, week_start: str, tx: Optional[Transaction] = None) -> Optional[UserWeekPenaltyRecord]:
        results = self._run(
            "SELECT * FROM user_week_penalties WHERE user_id = ? AND week_start = ?",
            (user_id, week_start),
            tx,
        )
        return UserWeekPenaltyRecord.from_row(results[0]) if results else None

    def update_totals(
        self,
        user_id: str,
        week_start: str,
        total_penalty_cents: int,
        last_updated: Optional[str] = None,
    ) -> None:
        """
        Write the aggregated total. Only a stamped call moves last_updated,
        which is what settlement reads as "when did we learn the truth".
        """
        if last_updated is not None:
            self.db.execute(
                """UPDATE user_week_penalties
                   SET total_penalty_cents = ?, actual_amount_cents = ?, last_updated = ?
                   WHERE user_id = ? AND week_start = ?""",
                (total_penalty_cents, total_penalty_cents, last_updated, user_id, week_start)
            )
        else:
            self.db.execute(
                """UPDATE user_week_penalties
                   SET total_penalty_cents = ?, actual_amount_cents = ?
                   WHERE user_id = ? AND week_start = ?""",
                (total_penalty_cents, total_penalty_cents, user_id, week_start)
            )

    def compare_and_set(
        self,
        tx: Transaction,
        user_id: str,
        week_start: str,
        expected_version: int,
        **fields: Any,
    ) -> bool:
        """
        Apply fields only if the row is still at expected_version.

        Returns False when another writer got there first; the caller must
        re-read and decide again.
        """
        unknown = set(fields) - self.MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update penalty fields: {sorted(unknown)}")

        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(getattr(value, "value", value))
        assignments.append("version = version + 1")

        tx.execute(
            f"""UPDATE user_week_penalties SET {', '.join(assignments)}
                WHERE user_id = ? AND week_start = ? AND version = ?""",
            tuple(params) + (user_id, week_start, expected_version)
        )
        return tx.rowcount == 1

    def list_needing_reconciliation(
        self,
        limit: int = 25,
        week_start: Optional[str] = None,
        user_id: Optional[str] = None,
        detected_only: bool = False,
    ) -> List[UserWeekPenaltyRecord]:
        """Flagged rows, oldest detection first."""
        query = "SELECT * FROM user_week_penalties WHERE needs_reconciliation = ?"
        params: List[Any] = [True]
        if detected_only:
            query += " AND reconciliation_detected_at IS NOT NULL"
        if week_start:
            query += " AND week_start = ?"
            params.append(week_start)
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY reconciliation_detected_at, week_start LIMIT ?"
        params.append(limit)

        results = self.db.execute(query, tuple(params))
        return [UserWeekPenaltyRecord.from_row(r) for r in results]

    def sum_charged(self, week_start: str, tx: Optional[Transaction] = None) -> int:
        results = self._run(
            "SELECT COALESCE(SUM(charged_amount_cents), 0) AS total FROM user_week_penalties WHERE week_start = ?",
            (week_start,),
            tx,
        )
        return int(results[0]["total"]) if results else 0


class PaymentRepository(_Repository):
    """Repository for the append-only payments table."""

    def insert(self, payment: PaymentRecord, tx: Optional[Transaction] = None) -> PaymentRecord:
        self._run(
            """INSERT INTO payments
               (id, user_id, week_start, amount_cents, payment_type, status,
                gateway_ref, related_gateway_ref, idempotency_key, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            payment.to_db_tuple(),
            tx,
        )
        logger.info(
            "payment_recorded",
            user_id=payment.user_id,
            week_start=payment.week_start,
            payment_type=payment.payment_type,
            amount_cents=payment.amount_cents,
        )
        return payment

    def list_for_user_week(self, user_id: str, week_start: str) -> List[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payments WHERE user_id = ? AND week_start = ? ORDER BY created_at",
            (user_id, week_start)
        )
        return [PaymentRecord.from_row(r) for r in results]

    def get_by_idempotency_key(self, key: str) -> Optional[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payments WHERE idempotency_key = ?",
            (key,)
        )
        return PaymentRecord.from_row(results[0]) if results else None

    def update_status_by_gateway_ref(self, gateway_ref: str, status: str) -> int:
        """Record a gateway-reported status change. Amounts are never touched."""
        with self.db.transaction() as tx:
            tx.execute(
                "UPDATE payments SET status = ? WHERE gateway_ref = ?",
                (status, gateway_ref)
            )
            count = tx.rowcount
        logger.info("payment_status_updated", gateway_ref=gateway_ref, status=status, rows=count)
        return count


class PoolRepository(_Repository):
    """Repository for weekly pools."""

    def ensure_open(self, week_start: str, week_end: str) -> WeeklyPoolRecord:
        self.db.execute(
            """INSERT INTO weekly_pools (week_start, week_end, total_penalty_cents, status)
               VALUES (?, ?, 0, ?)
               ON CONFLICT (week_start) DO NOTHING""",
            (week_start, week_end, PoolStatus.OPEN.value)
        )
        return self.get(week_start)

    def get(self, week_start: str) -> Optional[WeeklyPoolRecord]:
        results = self.db.execute(
            "SELECT * FROM weekly_pools WHERE week_start = ?",
            (week_start,)
        )
        return WeeklyPoolRecord.from_row(results[0]) if results else None

    def close(self, week_start: str, total_penalty_cents: int, closed_at: Optional[str] = None) -> bool:
        """Close an open pool. Returns False if it was already closed or missing."""
        closed_at = closed_at or datetime.now(timezone.utc).isoformat()
        with self.db.transaction() as tx:
            tx.execute(
                """UPDATE weekly_pools
                   SET total_penalty_cents = ?, status = ?, closed_at = ?
                   WHERE week_start = ? AND status = ?""",
                (total_penalty_cents, PoolStatus.CLOSED.value, closed_at, week_start, PoolStatus.OPEN.value)
            )
            return tx.rowcount == 1

    def list_all(self, limit: int = 100) -> List[WeeklyPoolRecord]:
        results = self.db.execute(
            "SELECT * FROM weekly_pools ORDER BY week_start DESC LIMIT ?",
            (limit,)
        )
        return [WeeklyPoolRecord.from_row(r) for r in results]
