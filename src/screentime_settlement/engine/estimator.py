"""
Monitoring-Revocation Estimator

When a user revokes screen-time monitoring mid-week the engine no longer
receives real usage. For each missing day from the revocation date up to
the deadline it assumes a punitive default of ESTIMATED_USAGE_MULTIPLIER
times the daily limit, i.e. the full limit exceeded.

Days that already have an entry, real or estimated, are left alone, so
running the estimator twice is a no-op.
"""

from datetime import timedelta
from typing import List, Optional
import structlog

from ..core.status import MonitoringStatus
from ..core.timing import TimingPolicy, isoformat_utc, parse_timestamp
from ..persistence.database import Database, get_database
from ..persistence.models import CommitmentRecord, DailyUsageRecord
from ..persistence.repository import UsageRepository

logger = structlog.get_logger()

# Assumed usage per day after revocation, as a multiple of the daily limit
ESTIMATED_USAGE_MULTIPLIER = 2

ESTIMATED_SOURCE = "revocation_estimate"


class RevocationEstimator:
    """Synthesizes estimated usage rows for revoked commitments."""

    def __init__(self, policy: TimingPolicy, db: Optional[Database] = None):
        self.policy = policy
        self.db = db or get_database()
        self.usage = UsageRepository(self.db)

    def estimate(self, commitment: CommitmentRecord) -> List[DailyUsageRecord]:
        """
        Fill missing days in [revoked_at.date, week_end.date).

        Returns only the rows created by this call.
        """
        if commitment.monitoring_status != MonitoringStatus.REVOKED or not commitment.monitoring_revoked_at:
            logger.debug("estimation_skipped_no_revocation", commitment_id=commitment.id)
            return []

        first_day = self.policy.local_date(parse_timestamp(commitment.monitoring_revoked_at))
        end_day = self.policy.local_date(parse_timestamp(commitment.week_end))

        used = commitment.limit_minutes * ESTIMATED_USAGE_MULTIPLIER
        exceeded = used - commitment.limit_minutes
        penalty = exceeded * commitment.penalty_per_minute_cents
        now = isoformat_utc(self.policy.now())

        created: List[DailyUsageRecord] = []
        day = first_day
        while day < end_day:
            entry = DailyUsageRecord(
                user_id=commitment.user_id,
                commitment_id=commitment.id,
                date=day.isoformat(),
                used_minutes=float(used),
                limit_minutes=commitment.limit_minutes,
                exceeded_minutes=float(exceeded),
                penalty_cents=penalty,
                is_estimated=True,
                source=ESTIMATED_SOURCE,
                reported_at=now,
            )
            if self.usage.insert_if_absent(entry):
                created.append(entry)
            day += timedelta(days=1)

        if created:
            logger.info(
                "usage_estimated",
                commitment_id=commitment.id,
                user_id=commitment.user_id,
                days=len(created),
                penalty_cents_per_day=penalty,
            )
        return created
