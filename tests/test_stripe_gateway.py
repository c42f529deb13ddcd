"""
Tests for the Stripe gateway error mapping and webhooks.

Stripe calls are monkeypatched; nothing leaves the process.
"""

from types import SimpleNamespace

import pytest
import stripe

from screentime_settlement.billing.gateway import (
    IDEMPOTENCY_REUSED_CODE,
    GatewayBelowMinimumError,
    GatewayRejectedError,
    GatewayTransientError,
)
from screentime_settlement.billing.stripe_gateway import StripeGateway, StripeWebhookError
from screentime_settlement.core.status import SettlementStatus
from screentime_settlement.engine.settlement import SettlementEngine, SettlementOutcome

from conftest import AFTER_GRACE, WEEK_END


@pytest.fixture
def live_gateway():
    return StripeGateway(api_key="sk_test_dummy", webhook_secret="whsec_dummy")


def _raise(error):
    def _call(*args, **kwargs):
        raise error
    return _call


class TestMockMode:
    """Without an API key the gateway answers locally, when allowed to."""

    def test_not_available(self):
        assert StripeGateway(allow_mock=True).is_available is False

    def test_same_key_same_reference(self):
        gateway = StripeGateway(allow_mock=True)

        first = gateway.charge("cus_1", 4200, "user-1:week:worst_case")
        second = gateway.charge("cus_1", 4200, "user-1:week:worst_case")
        other = gateway.charge("cus_1", 4200, "user-2:week:worst_case")

        assert first.gateway_ref == second.gateway_ref
        assert first.gateway_ref.startswith("pi_mock_")
        assert other.gateway_ref != first.gateway_ref

    def test_refund_reference(self):
        refund = StripeGateway(allow_mock=True).refund("pi_mock_abc", 1700, "user-1:week:refund")

        assert refund.success
        assert refund.gateway_ref.startswith("re_mock_")

    def test_debug_environment_enables_mock(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")

        assert StripeGateway().charge("cus_1", 4200, "key-1").success


class TestUnconfigured:
    """A missing API key outside test and debug deployments moves no fake money."""

    def test_charge_refused(self):
        gateway = StripeGateway()

        with pytest.raises(GatewayTransientError) as exc_info:
            gateway.charge("cus_1", 4200, "user-1:week:worst_case")

        assert exc_info.value.code == "not_configured"
        assert gateway.allow_mock is False

    def test_refund_refused(self):
        with pytest.raises(GatewayTransientError):
            StripeGateway().refund("pi_123", 1700, "user-1:week:refund")

    def test_settlement_leaves_week_pending(self, make_commitment, policy, db, clock, penalties):
        commitment = make_commitment()
        clock.set(AFTER_GRACE)
        engine = SettlementEngine(policy, StripeGateway(), db, processor_minimum_cents=60)

        run = engine.settle(WEEK_END)

        assert run.results[0].outcome == SettlementOutcome.GATEWAY_TRANSIENT
        row = penalties.get("user-1", commitment.week_start)
        assert row.settlement_status == SettlementStatus.PENDING
        assert row.charged_amount_cents == 0


class TestChargeMapping:
    """Stripe errors become gateway errors the engine understands."""

    def test_success(self, live_gateway, monkeypatch):
        calls = []

        def _create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="pi_123", status="succeeded")

        monkeypatch.setattr(stripe.PaymentIntent, "create", _create)

        result = live_gateway.charge("cus_1", 4200, "key-1", payment_method_ref="pm_1")

        assert result.gateway_ref == "pi_123"
        assert calls[0]["idempotency_key"] == "key-1"
        assert calls[0]["off_session"] is True
        assert calls[0]["amount"] == 4200

    def test_card_declined(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "create",
            _raise(stripe.CardError("Your card was declined.", None, "card_declined")),
        )

        with pytest.raises(GatewayRejectedError) as exc_info:
            live_gateway.charge("cus_1", 4200, "key-1")

        assert exc_info.value.code == "card_declined"

    def test_amount_too_small(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "create",
            _raise(stripe.InvalidRequestError("Amount must be at least $0.50 usd", "amount", code="amount_too_small")),
        )

        with pytest.raises(GatewayBelowMinimumError):
            live_gateway.charge("cus_1", 49, "key-1")

    def test_connection_error_is_transient(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "create",
            _raise(stripe.APIConnectionError("Network unreachable")),
        )

        with pytest.raises(GatewayTransientError):
            live_gateway.charge("cus_1", 4200, "key-1")

    def test_requires_action_is_rejected(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "create",
            lambda **kwargs: SimpleNamespace(id="pi_456", status="requires_action"),
        )

        with pytest.raises(GatewayRejectedError):
            live_gateway.charge("cus_1", 4200, "key-1")

    def test_reused_key_is_rejected(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.Refund, "create",
            _raise(stripe.IdempotencyError("Keys for idempotent requests can only be used with the same parameters")),
        )

        with pytest.raises(GatewayRejectedError) as exc_info:
            live_gateway.refund("pi_123", 1200, "user-1:week:refund")

        assert exc_info.value.code == IDEMPOTENCY_REUSED_CODE

    def test_refund_rate_limited(self, live_gateway, monkeypatch):
        monkeypatch.setattr(stripe.Refund, "create", _raise(stripe.RateLimitError("Too many requests")))

        with pytest.raises(GatewayTransientError):
            live_gateway.refund("pi_123", 1700, "key-2")


class TestWebhooks:

    def test_payment_failed_event(self, live_gateway, monkeypatch):
        event = SimpleNamespace(
            type="payment_intent.payment_failed",
            id="evt_1",
            data=SimpleNamespace(object=SimpleNamespace(id="pi_123")),
        )
        monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig, secret: event)

        parsed = live_gateway.parse_webhook(b"{}", "t=1,v1=sig")

        assert parsed == {
            "event_type": "payment_intent.payment_failed",
            "event_id": "evt_1",
            "gateway_ref": "pi_123",
            "status": "failed",
        }

    def test_bad_signature(self, live_gateway, monkeypatch):
        monkeypatch.setattr(
            stripe.Webhook, "construct_event",
            _raise(stripe.SignatureVerificationError("bad signature", "t=1,v1=sig")),
        )

        with pytest.raises(StripeWebhookError):
            live_gateway.parse_webhook(b"{}", "t=1,v1=sig")

    def test_webhook_secret_required(self):
        with pytest.raises(StripeWebhookError):
            StripeGateway(api_key="sk_test_dummy").parse_webhook(b"{}", "sig")
