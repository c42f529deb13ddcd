"""
Settlement Engine Exceptions

Errors raised by the ledger, settlement and reconciliation engines.
Gateway failures live next to the gateway in billing.gateway.
"""


class SettlementError(Exception):
    """Base class for settlement engine errors."""
    pass


class ValidationError(SettlementError):
    """Raised when input is rejected at the boundary (bad date, negative minutes)."""
    pass


class NotFoundError(SettlementError):
    """Raised when a commitment or penalty row does not exist."""
    pass


class InvalidTransitionError(SettlementError):
    """Raised when a settlement status change is not in the transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Transition {current} -> {target} is not allowed")


class ConcurrentUpdateError(SettlementError):
    """Raised when a compare-and-swap on a penalty row loses a race."""
    pass


class ReconciliationAmbiguousError(SettlementError):
    """
    Raised when a late sync reveals more owed than was charged and the
    extra charge cannot be taken automatically. The row stays flagged for
    manual review.
    """

    def __init__(self, user_id: str, week_start: str, delta_cents: int, reason: str):
        self.user_id = user_id
        self.week_start = week_start
        self.delta_cents = delta_cents
        self.reason = reason
        super().__init__(
            f"Positive reconciliation delta {delta_cents} for {user_id}/{week_start}: {reason}"
        )
