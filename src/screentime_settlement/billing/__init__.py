"""
Billing Module

Payment gateway contract plus the Stripe implementation used to charge
penalties and refund over-charges.
"""

from .gateway import (
    PaymentGateway,
    GatewayResult,
    PaymentGatewayError,
    GatewayTransientError,
    GatewayRejectedError,
    GatewayBelowMinimumError,
)
from .stripe_gateway import StripeGateway, StripeWebhookError

__all__ = [
    "PaymentGateway",
    "GatewayResult",
    "PaymentGatewayError",
    "GatewayTransientError",
    "GatewayRejectedError",
    "GatewayBelowMinimumError",
    "StripeGateway",
    "StripeWebhookError",
]
