"""
Settlement Engines

Usage Ledger -> Penalty Aggregator -> Settlement Engine -> payment gateway
-> Reconciliation Engine (late data) -> Weekly Pool Aggregator
"""

from .ledger import UsageLedger, PenaltyAggregator, compute_day_penalty
from .estimator import RevocationEstimator, ESTIMATED_USAGE_MULTIPLIER
from .commitments import CommitmentService, max_charge_cents
from .settlement import (
    SettlementEngine,
    SettlementRun,
    SettlementOutcome,
    CommitmentSettlement,
    idempotency_key,
)
from .reconciliation import (
    ReconciliationEngine,
    ReconciliationResult,
    ReconciliationOutcome,
    QueueRun,
)
from .pool import WeeklyPoolAggregator
from .sync import UsageSyncService

__all__ = [
    "UsageLedger",
    "PenaltyAggregator",
    "compute_day_penalty",
    "RevocationEstimator",
    "ESTIMATED_USAGE_MULTIPLIER",
    "CommitmentService",
    "max_charge_cents",
    "SettlementEngine",
    "SettlementRun",
    "SettlementOutcome",
    "CommitmentSettlement",
    "idempotency_key",
    "ReconciliationEngine",
    "ReconciliationResult",
    "ReconciliationOutcome",
    "QueueRun",
    "WeeklyPoolAggregator",
    "UsageSyncService",
]
