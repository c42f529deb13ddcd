"""
Stripe Gateway for Penalty Settlement

Integrates with Stripe for:
- Off-session PaymentIntents against a saved payment method
- Full and partial refunds of worst-case charges
- Webhooks that report the final status of a PaymentIntent

Without STRIPE_API_KEY the gateway only runs in mock mode (deterministic
references derived from the idempotency key) when TESTING_MODE or DEBUG
is set. Otherwise every charge and refund fails as transient, so no week
is ever marked charged without money moving.
"""

import hashlib
import os
import threading
from typing import Any, Dict, Optional
import structlog
import stripe

from ..core.status import PaymentStatus
from .gateway import (
    GatewayBelowMinimumError,
    IDEMPOTENCY_REUSED_CODE,
    GatewayRejectedError,
    GatewayResult,
    GatewayTransientError,
    PaymentGateway,
    PaymentGatewayError,
)

logger = structlog.get_logger()

# Stripe error codes meaning the amount is under the processor minimum
BELOW_MINIMUM_CODES = frozenset({"amount_too_small"})

WEBHOOK_STATUS_EVENTS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED.value,
    "payment_intent.processing": PaymentStatus.PROCESSING.value,
    "payment_intent.payment_failed": PaymentStatus.FAILED.value,
    "payment_intent.canceled": PaymentStatus.FAILED.value,
}


class StripeWebhookError(PaymentGatewayError):
    """Raised when a webhook cannot be verified or parsed."""
    pass


def mock_mode_allowed() -> bool:
    """Mock payments are only acceptable in test and debug deployments."""
    return any(
        os.environ.get(name, "false").lower() == "true"
        for name in ("TESTING_MODE", "DEBUG")
    )


class StripeGateway(PaymentGateway):
    """
    Stripe-backed payment gateway.

    Every request is sent with the caller's idempotency key, so a retry
    after a timeout returns the original PaymentIntent instead of charging
    twice.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
        allow_mock: Optional[bool] = None,
    ):
        """
        Initialize Stripe gateway.

        Args:
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            webhook_secret: Stripe webhook signing secret (or STRIPE_WEBHOOK_SECRET env var)
            currency: Currency for all charges
            allow_mock: Fake successful payments when no API key is set
                (defaults to TESTING_MODE or DEBUG)
        """
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET")
        self.currency = currency
        self.allow_mock = allow_mock if allow_mock is not None else mock_mode_allowed()

        self._mock_results: Dict[str, GatewayResult] = {}
        self._mock_lock = threading.Lock()
        self._initialized = False

        if self.api_key:
            stripe.api_key = self.api_key
            self._initialized = True
            logger.info("stripe_gateway_initialized")
        elif self.allow_mock:
            logger.warning("stripe_mock_mode", api_key_set=False)
        else:
            logger.error("stripe_not_configured", api_key_set=False, mock_allowed=False)

    @property
    def is_available(self) -> bool:
        """Check if live Stripe calls are enabled."""
        return self._initialized

    def _offline_result(self, prefix: str, idempotency_key: str) -> GatewayResult:
        if not self.allow_mock:
            logger.error("stripe_call_without_api_key", idempotency_key=idempotency_key)
            raise GatewayTransientError("Stripe is not configured (STRIPE_API_KEY unset)", code="not_configured")

        with self._mock_lock:
            if idempotency_key not in self._mock_results:
                digest = hashlib.sha256(idempotency_key.encode()).hexdigest()[:24]
                self._mock_results[idempotency_key] = GatewayResult(
                    success=True,
                    gateway_ref=f"{prefix}_mock_{digest}",
                )
            return self._mock_results[idempotency_key]

    def charge(
        self,
        customer_ref: str,
        amount_cents: int,
        idempotency_key: str,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        """
        Charge a saved payment method off-session.

        Returns:
            GatewayResult with the PaymentIntent id as gateway_ref
        """
        if not self._initialized:
            return self._offline_result("pi", idempotency_key)

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                customer=customer_ref,
                payment_method=payment_method_ref,
                off_session=True,
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.error("stripe_charge_declined", customer=customer_ref, code=e.code, error=str(e))
            raise GatewayRejectedError(f"Card declined: {e.user_message or e}", code=e.code)
        except stripe.InvalidRequestError as e:
            raise self._map_invalid_request(e, customer_ref)
        except stripe.IdempotencyError as e:
            logger.error("stripe_charge_key_reused", customer=customer_ref, key=idempotency_key, error=str(e))
            raise GatewayRejectedError(f"Idempotency key reused: {e}", code=IDEMPOTENCY_REUSED_CODE)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.error("stripe_charge_transient_failure", customer=customer_ref, error=str(e))
            raise GatewayTransientError(f"Stripe unavailable: {e}")
        except stripe.StripeError as e:
            logger.error("stripe_charge_failed", customer=customer_ref, error=str(e))
            raise GatewayTransientError(f"Failed to charge: {e}")

        if intent.status not in ("succeeded", "processing"):
            logger.error(
                "stripe_charge_not_completed",
                payment_intent=intent.id,
                status=intent.status,
            )
            raise GatewayRejectedError(
                f"PaymentIntent {intent.id} ended in status {intent.status}",
                code=intent.status,
            )

        logger.info(
            "stripe_charge_created",
            payment_intent=intent.id,
            amount_cents=amount_cents,
            status=intent.status,
        )
        return GatewayResult(success=True, gateway_ref=intent.id, status=intent.status)

    def _map_invalid_request(self, error: Any, customer_ref: str) -> PaymentGatewayError:
        message = str(error)
        if error.code in BELOW_MINIMUM_CODES or "minimum" in message.lower():
            logger.warning("stripe_amount_below_minimum", customer=customer_ref, error=message)
            return GatewayBelowMinimumError(message, code=error.code)
        logger.error("stripe_charge_rejected", customer=customer_ref, code=error.code, error=message)
        return GatewayRejectedError(message, code=error.code)

    def refund(
        self,
        gateway_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        """Refund amount_cents of an earlier PaymentIntent."""
        if not self._initialized:
            return self._offline_result("re", idempotency_key)

        try:
            refund = stripe.Refund.create(
                payment_intent=gateway_ref,
                amount=amount_cents,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            logger.error("stripe_refund_rejected", payment_intent=gateway_ref, error=str(e))
            raise GatewayRejectedError(f"Refund rejected: {e}", code=e.code)
        except stripe.IdempotencyError as e:
            logger.error("stripe_refund_key_reused", payment_intent=gateway_ref, key=idempotency_key, error=str(e))
            raise GatewayRejectedError(f"Idempotency key reused: {e}", code=IDEMPOTENCY_REUSED_CODE)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.error("stripe_refund_transient_failure", payment_intent=gateway_ref, error=str(e))
            raise GatewayTransientError(f"Stripe unavailable: {e}")
        except stripe.StripeError as e:
            logger.error("stripe_refund_failed", payment_intent=gateway_ref, error=str(e))
            raise GatewayTransientError(f"Failed to refund: {e}")

        logger.info(
            "stripe_refund_created",
            refund_id=refund.id,
            payment_intent=gateway_ref,
            amount_cents=amount_cents,
        )
        return GatewayResult(success=True, gateway_ref=refund.id, status=refund.status)

    def parse_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and decode a Stripe webhook.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            {"event_type", "event_id", "gateway_ref", "status"}; status is
            None for event types that do not change a payment.
        """
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise StripeWebhookError("Webhook not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise StripeWebhookError("Invalid webhook signature")
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            raise StripeWebhookError(f"Invalid webhook payload: {e}")

        logger.info(
            "stripe_webhook_received",
            event_type=event.type,
            event_id=event.id,
        )

        intent = event.data.object
        return {
            "event_type": event.type,
            "event_id": event.id,
            "gateway_ref": getattr(intent, "id", None),
            "status": WEBHOOK_STATUS_EVENTS.get(event.type),
        }
