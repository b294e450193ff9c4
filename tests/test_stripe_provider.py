"""
Tests for StripeProvider webhook verification and event mapping.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
import stripe

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.api import BillingEventKind, Plan
from app.models.domain import CheckoutIntent
from app.services.stripe_provider import StripeProvider

SECRET = "whsec_provider_test"


def _signed(event: dict, secret: str = SECRET, timestamp: int | None = None) -> tuple[bytes, str]:
    payload = json.dumps(event)
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return payload.encode("utf-8"), f"t={ts},v1={signature}"


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="", webhook_secret=SECRET)


class TestVerifyWebhook:
    """Tests for signature verification."""

    @pytest.mark.asyncio
    async def test_valid_signature(self, provider):
        payload, header = _signed(
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "mode": "payment",
                        "client_reference_id": "user-1",
                        "customer": {"id": "cus_1", "object": "customer"},
                        "metadata": {"credits": "250"},
                    }
                },
            }
        )

        event = await provider.verify_webhook(payload, header)

        assert event.event_id == "evt_1"
        assert event.kind == BillingEventKind.CHECKOUT_COMPLETED
        assert event.user_id == "user-1"
        assert event.mode == "payment"
        assert event.credits == 250
        assert event.customer_ref == "cus_1"
        assert event.provider_type == "stripe"

    @pytest.mark.asyncio
    async def test_wrong_secret(self, provider):
        payload, header = _signed({"id": "evt_1", "type": "invoice.paid"}, secret="whsec_other")

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload, header)

    @pytest.mark.asyncio
    async def test_tampered_payload(self, provider):
        payload, header = _signed({"id": "evt_1", "type": "invoice.paid"})

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.replace(b"evt_1", b"evt_2"), header)

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, provider):
        payload, header = _signed(
            {"id": "evt_1", "type": "invoice.paid"}, timestamp=int(time.time()) - 3600
        )

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload, header)

    @pytest.mark.asyncio
    async def test_missing_signature(self, provider):
        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(b"{}", "")

    @pytest.mark.asyncio
    async def test_unconfigured_secret(self):
        payload, header = _signed({"id": "evt_1", "type": "invoice.paid"})

        with pytest.raises(WebhookVerificationError):
            await StripeProvider(api_key="", webhook_secret="").verify_webhook(payload, header)

    @pytest.mark.asyncio
    async def test_authentic_but_not_an_event(self, provider):
        payload, header = _signed({"object": "list"})

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload, header)


class TestParseEvent:
    """Tests for Stripe payload -> BillingEvent mapping."""

    def test_unknown_type(self, provider):
        event = provider.parse_event("evt_2", "customer.created", {"id": "cus_1"})

        assert event.kind == BillingEventKind.UNKNOWN
        assert event.user_id is None

    def test_subscription_event_period_on_items(self, provider):
        event = provider.parse_event(
            "evt_3",
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "past_due",
                "cancel_at_period_end": True,
                "metadata": {"user_id": "user-1", "plan_id": "pro"},
                "items": {"data": [{"current_period_end": 1_790_000_000}]},
            },
        )

        assert event.kind == BillingEventKind.SUBSCRIPTION_UPDATED
        assert event.subscription_ref == "sub_1"
        assert event.subscription_status == "past_due"
        assert event.cancel_at_period_end is True
        assert event.current_period_end == datetime.fromtimestamp(1_790_000_000, tz=UTC)
        assert event.plan == "pro"

    def test_invoice_subscription_under_parent(self, provider):
        event = provider.parse_event(
            "evt_4",
            "invoice.payment_succeeded",
            {
                "customer": "cus_1",
                "billing_reason": "subscription_cycle",
                "parent": {
                    "subscription_details": {
                        "subscription": "sub_9",
                        "metadata": {"user_id": "user-9"},
                    }
                },
            },
        )

        assert event.kind == BillingEventKind.INVOICE_PAYMENT_SUCCEEDED
        assert event.subscription_ref == "sub_9"
        assert event.user_id == "user-9"
        assert event.billing_reason == "subscription_cycle"

    def test_non_numeric_credit_metadata(self, provider):
        event = provider.parse_event(
            "evt_5",
            "checkout.session.completed",
            {"mode": "payment", "metadata": {"user_id": "user-1", "credits": "lots"}},
        )

        assert event.credits is None


class TestCreateCheckoutSession:
    """Tests for hosted checkout creation."""

    @pytest.fixture
    def stripe_calls(self, monkeypatch) -> list[dict]:
        calls: list[dict] = []

        def fake_create(**params):
            calls.append(params)
            return SimpleNamespace(id="cs_live_1", url="https://checkout.stripe.com/c/cs_live_1")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        return calls

    @pytest.mark.asyncio
    async def test_subscription_session_carries_user_metadata(self, provider, stripe_calls):
        intent = CheckoutIntent(
            user_id="user-1",
            plan=Plan.PRO,
            price_ref="price_pro",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
            customer_ref="cus_1",
        )

        session = await provider.create_checkout_session(intent)

        assert session.session_id == "cs_live_1"
        assert session.url == "https://checkout.stripe.com/c/cs_live_1"
        params = stripe_calls[0]
        assert params["mode"] == "subscription"
        assert params["customer"] == "cus_1"
        assert params["client_reference_id"] == "user-1"
        assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert params["metadata"] == {"user_id": "user-1", "plan_id": "pro"}
        assert params["subscription_data"] == {"metadata": {"user_id": "user-1", "plan_id": "pro"}}

    @pytest.mark.asyncio
    async def test_credit_pack_session(self, provider, stripe_calls):
        intent = CheckoutIntent(
            user_id="user-1",
            plan=Plan.PAYG,
            price_ref="price_pack",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
            credits=100,
        )

        await provider.create_checkout_session(intent)

        params = stripe_calls[0]
        assert params["mode"] == "payment"
        assert params["metadata"]["credits"] == "100"
        assert "customer" not in params
        assert "subscription_data" not in params

    @pytest.mark.asyncio
    async def test_checkout_metadata_parses_back(self, provider, stripe_calls):
        """A completed session maps back onto the buyer and pack size."""
        intent = CheckoutIntent(
            user_id="user-7",
            plan=Plan.PAYG,
            price_ref="price_pack",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
            credits=100,
        )
        await provider.create_checkout_session(intent)
        params = stripe_calls[0]

        event = provider.parse_event(
            "evt_checkout",
            "checkout.session.completed",
            {"mode": params["mode"], "metadata": params["metadata"], "customer": "cus_7"},
        )

        assert event.user_id == "user-7"
        assert event.plan == "payg"
        assert event.credits == 100

    @pytest.mark.asyncio
    async def test_stripe_error_raises_provider_error(self, provider, monkeypatch):
        def failing_create(**params):
            raise stripe.StripeError("No such price: 'price_missing'")

        monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)
        intent = CheckoutIntent(
            user_id="user-1",
            plan=Plan.STARTER,
            price_ref="price_missing",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

        with pytest.raises(PaymentProviderError, match="price_missing"):
            await provider.create_checkout_session(intent)
