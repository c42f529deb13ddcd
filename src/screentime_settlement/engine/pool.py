"""
Weekly Pool Aggregator

Sums what was actually charged across all users for one week and closes
that week's pool. Closing is scoped to a single week_start; other pools,
open or closed, are never touched.
"""

from typing import Any, Optional
import structlog

from ..core.exceptions import NotFoundError
from ..core.status import PoolStatus
from ..core.timing import TimingPolicy, isoformat_utc, parse_timestamp
from ..persistence.database import Database, get_database
from ..persistence.models import WeeklyPoolRecord
from ..persistence.repository import PenaltyRepository, PoolRepository

logger = structlog.get_logger()


class WeeklyPoolAggregator:
    """Closes weekly pools."""

    def __init__(self, policy: TimingPolicy, db: Optional[Database] = None):
        self.policy = policy
        self.db = db or get_database()
        self.pools = PoolRepository(self.db)
        self.penalties = PenaltyRepository(self.db)

    def close_week(self, week_start: Any) -> WeeklyPoolRecord:
        """
        Close the pool for week_start with the sum of charged amounts.

        Closing an already closed pool returns it unchanged.
        """
        week_start_iso = isoformat_utc(parse_timestamp(week_start))
        pool = self.pools.get(week_start_iso)
        if pool is None:
            raise NotFoundError(f"No pool for week starting {week_start_iso}")

        if pool.status == PoolStatus.CLOSED:
            logger.info("pool_already_closed", week_start=week_start_iso)
            return pool

        total = self.penalties.sum_charged(week_start_iso)
        closed_at = isoformat_utc(self.policy.now())
        if self.pools.close(week_start_iso, total, closed_at):
            logger.info("pool_closed", week_start=week_start_iso, total_penalty_cents=total)
        else:
            logger.info("pool_close_raced", week_start=week_start_iso)
        return self.pools.get(week_start_iso)

    def close_week_ending(self, week_end: Any = None) -> WeeklyPoolRecord:
        """Close the pool for the week whose deadline is week_end (default: last completed week)."""
        target = self.policy.resolve_week_target(week_end)
        return self.close_week(self.policy.week_start(target))
