"""
Settlement State Machine

Closed enums for every status column plus the transition table that
guards UserWeekPenalty.settlement_status.

    pending ──► no_charge | below_minimum | charged_actual | charged_worst_case | charge_failed
    charge_failed ──► (same targets as pending, it is retried)
    charged_worst_case ──► refunded | refunded_partial | charged_actual_adjusted

Everything else is terminal.
"""

from enum import Enum
from typing import Dict, FrozenSet

from .exceptions import InvalidTransitionError


class SettlementStatus(Enum):
    """Per-(user, week) settlement outcome."""
    PENDING = "pending"
    NO_CHARGE = "no_charge"
    BELOW_MINIMUM = "below_minimum"
    CHARGED_ACTUAL = "charged_actual"
    CHARGED_WORST_CASE = "charged_worst_case"
    CHARGE_FAILED = "charge_failed"
    REFUNDED = "refunded"
    REFUNDED_PARTIAL = "refunded_partial"
    CHARGED_ACTUAL_ADJUSTED = "charged_actual_adjusted"

    @property
    def is_settled(self) -> bool:
        """True once the week no longer needs a settlement decision."""
        return self not in (SettlementStatus.PENDING, SettlementStatus.CHARGE_FAILED)

    @property
    def has_charged(self) -> bool:
        return self in CHARGED_STATUSES


class PaymentType(Enum):
    """Kind of money movement recorded in the payments table."""
    PENALTY_ACTUAL = "penalty_actual"
    PENALTY_WORST_CASE = "penalty_worst_case"
    PENALTY_ACTUAL_ADJUSTED = "penalty_actual_adjusted"
    PENALTY_REFUND = "penalty_refund"


class ChargeType(Enum):
    """Which branch of the settlement decision produced a charge."""
    ACTUAL = "actual"
    WORST_CASE = "worst_case"
    ACTUAL_ADJUSTED = "actual_adjusted"
    REFUND = "refund"


class MonitoringStatus(Enum):
    OK = "ok"
    REVOKED = "revoked"


class PoolStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class PaymentStatus(Enum):
    """Gateway-side status of a payment row, updated by webhooks."""
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"


CHARGED_STATUSES: FrozenSet[SettlementStatus] = frozenset({
    SettlementStatus.CHARGED_ACTUAL,
    SettlementStatus.CHARGED_WORST_CASE,
    SettlementStatus.REFUNDED,
    SettlementStatus.REFUNDED_PARTIAL,
    SettlementStatus.CHARGED_ACTUAL_ADJUSTED,
})

_FROM_PENDING = frozenset({
    SettlementStatus.NO_CHARGE,
    SettlementStatus.BELOW_MINIMUM,
    SettlementStatus.CHARGED_ACTUAL,
    SettlementStatus.CHARGED_WORST_CASE,
    SettlementStatus.CHARGE_FAILED,
})

ALLOWED_TRANSITIONS: Dict[SettlementStatus, FrozenSet[SettlementStatus]] = {
    SettlementStatus.PENDING: _FROM_PENDING,
    SettlementStatus.CHARGE_FAILED: _FROM_PENDING,
    SettlementStatus.CHARGED_WORST_CASE: frozenset({
        SettlementStatus.REFUNDED,
        SettlementStatus.REFUNDED_PARTIAL,
        SettlementStatus.CHARGED_ACTUAL_ADJUSTED,
    }),
}


def can_transition(current: SettlementStatus, target: SettlementStatus) -> bool:
    """Check whether current -> target is in the transition table."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: SettlementStatus, target: SettlementStatus) -> SettlementStatus:
    """Return target if the transition is allowed, otherwise raise."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    return target
