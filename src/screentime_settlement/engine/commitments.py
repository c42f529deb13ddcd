"""
Commitment Lifecycle

Creating a commitment fixes its deadline, grace window and worst-case cap,
opens the week's pool and creates the pending penalty row. Monitoring
revocation is recorded once and never undone.
"""

from datetime import datetime
from typing import Optional
import structlog

from ..core.exceptions import NotFoundError, ValidationError
from ..core.status import MonitoringStatus
from ..core.timing import TimingPolicy, isoformat_utc, parse_timestamp
from ..persistence.database import Database, get_database
from ..persistence.models import AppsToLimit, CommitmentRecord
from ..persistence.repository import CommitmentRepository, PenaltyRepository, PoolRepository

logger = structlog.get_logger()

DAYS_PER_WEEK = 7


def max_charge_cents(limit_minutes: int, penalty_per_minute_cents: int) -> int:
    """Worst-case weekly charge: the full limit exceeded on every day."""
    return limit_minutes * penalty_per_minute_cents * DAYS_PER_WEEK


class CommitmentService:
    """Creates commitments and records monitoring revocation."""

    def __init__(self, policy: TimingPolicy, db: Optional[Database] = None):
        self.policy = policy
        self.db = db or get_database()
        self.commitments = CommitmentRepository(self.db)
        self.penalties = PenaltyRepository(self.db)
        self.pools = PoolRepository(self.db)

    def create_commitment(
        self,
        user_id: str,
        limit_minutes: int,
        penalty_per_minute_cents: int,
        apps_to_limit: Optional[AppsToLimit] = None,
        saved_payment_method_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        week_end: Optional[datetime] = None,
    ) -> CommitmentRecord:
        """
        Create a commitment for the week ending at week_end.

        Without week_end the next deadline under the timing policy is used.
        A user may hold one commitment per week.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if limit_minutes < 0:
            raise ValidationError(f"limit_minutes must be non-negative, got {limit_minutes}")
        if penalty_per_minute_cents < 0:
            raise ValidationError(f"penalty_per_minute_cents must be non-negative, got {penalty_per_minute_cents}")

        deadline = parse_timestamp(week_end) if week_end else self.policy.next_deadline()
        week_start = self.policy.week_start(deadline)
        grace = self.policy.grace_deadline(deadline)

        week_end_iso = isoformat_utc(deadline)
        if self.commitments.get_for_user_week(user_id, week_end_iso):
            raise ValidationError(f"User {user_id} already has a commitment for week ending {week_end_iso}")

        commitment = CommitmentRecord(
            user_id=user_id,
            week_start=isoformat_utc(week_start),
            week_end=week_end_iso,
            grace_expires_at=isoformat_utc(grace),
            limit_minutes=limit_minutes,
            penalty_per_minute_cents=penalty_per_minute_cents,
            max_charge_cents=max_charge_cents(limit_minutes, penalty_per_minute_cents),
            apps_to_limit=apps_to_limit or AppsToLimit(),
            saved_payment_method_ref=saved_payment_method_ref,
            customer_ref=customer_ref,
            created_at=isoformat_utc(self.policy.now()),
        )

        self.pools.ensure_open(commitment.week_start, commitment.week_end)
        self.commitments.create(commitment)
        self.penalties.ensure(user_id, commitment.week_start, commitment.week_end)
        return commitment

    def revoke_monitoring(self, commitment_id: str, revoked_at: Optional[datetime] = None) -> CommitmentRecord:
        """Record that monitoring was revoked. A second call changes nothing."""
        commitment = self.commitments.get(commitment_id)
        if commitment is None:
            raise NotFoundError(f"Commitment {commitment_id} not found")

        if commitment.monitoring_status == MonitoringStatus.REVOKED:
            logger.info("monitoring_already_revoked", commitment_id=commitment_id)
            return commitment

        when = parse_timestamp(revoked_at) if revoked_at else self.policy.now()
        self.commitments.mark_monitoring_revoked(commitment_id, isoformat_utc(when))
        return self.commitments.get(commitment_id)
