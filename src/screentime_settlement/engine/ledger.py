"""
Usage Ledger and Penalty Aggregator

The ledger stores one row per (user, date, commitment); later reports for
the same day overwrite earlier ones. Penalties are always recomputed here
from minutes and the commitment's rate, never taken from the client.

The aggregator sums a commitment's daily penalties onto its UserWeekPenalty
row. When it is driven by a usage report it also stamps last_updated with
the report's timestamp, which settlement uses to decide whether the actual
total was known within the grace window.
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple
import structlog

from ..core.exceptions import NotFoundError, ValidationError
from ..core.timing import TimingPolicy, isoformat_utc, parse_timestamp
from ..persistence.database import Database, get_database
from ..persistence.models import DailyUsageRecord
from ..persistence.repository import CommitmentRepository, PenaltyRepository, UsageRepository

logger = structlog.get_logger()


def compute_day_penalty(
    used_minutes: float,
    limit_minutes: int,
    penalty_per_minute_cents: int,
) -> Tuple[float, int]:
    """
    Return (exceeded_minutes, penalty_cents) for one day.

    Fractional minutes are kept; the penalty is rounded half-up to whole cents.
    """
    used = Decimal(str(used_minutes))
    exceeded = max(Decimal(0), used - Decimal(limit_minutes))
    penalty = (exceeded * Decimal(penalty_per_minute_cents)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(exceeded), int(penalty)


def parse_usage_date(value) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError:
        raise ValidationError(f"Invalid usage date: {value!r}")


class PenaltyAggregator:
    """Sums daily penalties onto the owning UserWeekPenalty row."""

    def __init__(self, policy: TimingPolicy, db: Optional[Database] = None):
        self.policy = policy
        self.db = db or get_database()
        self.commitments = CommitmentRepository(self.db)
        self.usage = UsageRepository(self.db)
        self.penalties = PenaltyRepository(self.db)

    def recompute(
        self,
        user_id: str,
        commitment_id: str,
        timestamp: Optional[datetime] = None,
        stamp: bool = True,
    ) -> int:
        """
        Recompute the week's total penalty for a commitment.

        Args:
            user_id: Owner of the commitment
            commitment_id: Commitment whose daily rows are summed
            timestamp: Value for last_updated (defaults to the policy clock)
            stamp: False leaves last_updated untouched (estimator backfill)

        Returns:
            total_penalty_cents
        """
        commitment = self.commitments.get(commitment_id)
        if commitment is None or commitment.user_id != user_id:
            raise NotFoundError(f"Commitment {commitment_id} not found for user {user_id}")

        self.penalties.ensure(user_id, commitment.week_start, commitment.week_end)
        total = self.usage.sum_penalty(commitment_id)

        last_updated = None
        if stamp:
            last_updated = isoformat_utc(parse_timestamp(timestamp) if timestamp else self.policy.now())

        self.penalties.update_totals(user_id, commitment.week_start, total, last_updated)

        logger.info(
            "penalty_recomputed",
            user_id=user_id,
            commitment_id=commitment_id,
            total_penalty_cents=total,
            last_updated=last_updated,
        )
        return total


class UsageLedger:
    """Idempotent store of per-day usage reports."""

    def __init__(
        self,
        policy: TimingPolicy,
        db: Optional[Database] = None,
        aggregator: Optional[PenaltyAggregator] = None,
    ):
        self.policy = policy
        self.db = db or get_database()
        self.usage = UsageRepository(self.db)
        self.aggregator = aggregator or PenaltyAggregator(policy, self.db)

    def record_usage(
        self,
        user_id: str,
        commitment_id: str,
        usage_date,
        used_minutes: float,
        limit_minutes: int,
        penalty_per_minute_cents: int,
        timestamp: Optional[datetime] = None,
    ) -> DailyUsageRecord:
        """Upsert one day of usage and re-aggregate the week."""
        if used_minutes is None or used_minutes < 0:
            raise ValidationError(f"used_minutes must be non-negative, got {used_minutes!r}")
        if limit_minutes < 0 or penalty_per_minute_cents < 0:
            raise ValidationError("limit_minutes and penalty_per_minute_cents must be non-negative")

        day = parse_usage_date(usage_date)
        reported_at = parse_timestamp(timestamp) if timestamp else self.policy.now()
        exceeded, penalty = compute_day_penalty(used_minutes, limit_minutes, penalty_per_minute_cents)

        entry = self.usage.upsert(DailyUsageRecord(
            user_id=user_id,
            commitment_id=commitment_id,
            date=day,
            used_minutes=float(used_minutes),
            limit_minutes=limit_minutes,
            exceeded_minutes=exceeded,
            penalty_cents=penalty,
            is_estimated=False,
            source="client_sync",
            reported_at=isoformat_utc(reported_at),
        ))

        logger.info(
            "usage_recorded",
            user_id=user_id,
            commitment_id=commitment_id,
            date=day,
            used_minutes=used_minutes,
            penalty_cents=penalty,
        )

        self.aggregator.recompute(user_id, commitment_id, timestamp=reported_at)
        return entry
