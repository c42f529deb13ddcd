"""
Payment Gateway Contract

The settlement engine only ever talks to this interface. A gateway may
succeed, reject, or fail transiently; the engine maps each outcome onto a
settlement status and never treats a failure as success.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Code for a request that reuses an idempotency key with different parameters
IDEMPOTENCY_REUSED_CODE = "idempotency_key_reused"


class PaymentGatewayError(Exception):
    """Base class for gateway failures."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class GatewayTransientError(PaymentGatewayError):
    """Timeout, connection failure, rate limit or 5xx. Safe to retry with the same key."""
    pass


class GatewayRejectedError(PaymentGatewayError):
    """The gateway refused the request (declined card, no payment method)."""
    pass


class GatewayBelowMinimumError(GatewayRejectedError):
    """The amount is under the processor minimum after currency conversion."""
    pass


@dataclass
class GatewayResult:
    """Outcome of a successful charge or refund."""
    success: bool
    gateway_ref: str
    status: str = "succeeded"
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "gateway_ref": self.gateway_ref,
            "status": self.status,
        }


class PaymentGateway(ABC):
    """Charge and refund money. Every call carries an idempotency key."""

    @abstractmethod
    def charge(
        self,
        customer_ref: str,
        amount_cents: int,
        idempotency_key: str,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        """Charge a customer off-session. Raises PaymentGatewayError on failure."""

    @abstractmethod
    def refund(
        self,
        gateway_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        """Refund part or all of an earlier charge."""
