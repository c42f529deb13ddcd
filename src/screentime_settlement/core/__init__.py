"""
Core Module

Domain vocabulary shared by every engine: the settlement state machine,
the timing policy and the error taxonomy.
"""

from .status import (
    SettlementStatus,
    PaymentType,
    PaymentStatus,
    ChargeType,
    MonitoringStatus,
    PoolStatus,
    ALLOWED_TRANSITIONS,
    can_transition,
    validate_transition,
)
from .timing import TimingPolicy, isoformat_utc, parse_timestamp
from .exceptions import (
    SettlementError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    ConcurrentUpdateError,
    ReconciliationAmbiguousError,
)

__all__ = [
    "SettlementStatus",
    "PaymentType",
    "PaymentStatus",
    "ChargeType",
    "MonitoringStatus",
    "PoolStatus",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "validate_transition",
    "TimingPolicy",
    "isoformat_utc",
    "parse_timestamp",
    "SettlementError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConcurrentUpdateError",
    "ReconciliationAmbiguousError",
]
