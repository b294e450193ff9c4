"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe payloads are parsed into BillingEvent at the boundary.
"""

import json
from datetime import UTC, datetime
from typing import Any

import stripe

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.api import BillingEventKind
from app.models.domain import BillingEvent, CheckoutIntent, CheckoutSession
from app.observability.logging import get_logger

logger = get_logger(__name__)

STRIPE_EVENT_KINDS: dict[str, BillingEventKind] = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": BillingEventKind.TRIAL_WILL_END,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventKind.INVOICE_PAYMENT_FAILED,
}


def _from_epoch(value: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _ref(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class StripeProvider:
    """
    Stripe checkout and webhook provider.

    Implements the PaymentEventVerifier and CheckoutProvider protocols for Stripe.
    """

    provider_type = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            tolerance_seconds: Maximum signature age accepted
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        if api_key:
            stripe.api_key = api_key

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a hosted Stripe Checkout session.

        The user id, plan and credit amount are stamped into the session
        metadata (and the subscription's, for recurring plans) so the
        resulting webhooks can be applied to the right entitlement.

        Raises:
            PaymentProviderError: If the Stripe API call fails
        """
        metadata = {"user_id": intent.user_id, "plan_id": intent.plan.value}
        if intent.credits is not None:
            metadata["credits"] = str(intent.credits)

        params: dict[str, Any] = {
            "mode": intent.mode,
            "line_items": [{"price": intent.price_ref, "quantity": 1}],
            "success_url": intent.success_url,
            "cancel_url": intent.cancel_url,
            "client_reference_id": intent.user_id,
            "metadata": metadata,
        }
        if intent.customer_ref:
            params["customer"] = intent.customer_ref
        if intent.mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}

        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=intent.user_id,
                plan=intent.plan.value,
                mode=intent.mode,
            )
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

        logger.info("stripe_checkout_session_created", session_id=session.id)
        return CheckoutSession(session_id=session.id, url=session.url)

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Provider-agnostic billing event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook payload is not UTF-8") from exc

        try:
            event = json.loads(body)
            event_id = event["id"]
            event_type = event["type"]
            obj = event.get("data", {}).get("object", {}) or {}
        except (ValueError, KeyError, AttributeError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event_id, event_type=event_type)
        return self.parse_event(event_id, event_type, obj)

    def parse_event(self, event_id: str, event_type: str, obj: dict[str, Any]) -> BillingEvent:
        """Map a verified Stripe event onto a BillingEvent."""
        kind = STRIPE_EVENT_KINDS.get(event_type, BillingEventKind.UNKNOWN)

        if kind == BillingEventKind.CHECKOUT_COMPLETED:
            metadata = obj.get("metadata") or {}
            return BillingEvent(
                event_id=event_id,
                kind=kind,
                provider_type=self.provider_type,
                user_id=metadata.get("user_id") or obj.get("client_reference_id"),
                plan=metadata.get("plan_id"),
                mode=obj.get("mode"),
                credits=_int_or_none(metadata.get("credits")),
                customer_ref=_ref(obj.get("customer")),
                subscription_ref=_ref(obj.get("subscription")),
            )

        if kind in (
            BillingEventKind.SUBSCRIPTION_UPDATED,
            BillingEventKind.SUBSCRIPTION_DELETED,
            BillingEventKind.TRIAL_WILL_END,
        ):
            metadata = obj.get("metadata") or {}
            return BillingEvent(
                event_id=event_id,
                kind=kind,
                provider_type=self.provider_type,
                user_id=metadata.get("user_id"),
                plan=metadata.get("plan_id"),
                customer_ref=_ref(obj.get("customer")),
                subscription_ref=obj.get("id"),
                subscription_status=obj.get("status"),
                current_period_end=_from_epoch(self._period_end(obj)),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            )

        if kind in (
            BillingEventKind.INVOICE_PAYMENT_SUCCEEDED,
            BillingEventKind.INVOICE_PAYMENT_FAILED,
        ):
            subscription_ref, metadata = self._invoice_subscription(obj)
            return BillingEvent(
                event_id=event_id,
                kind=kind,
                provider_type=self.provider_type,
                user_id=metadata.get("user_id"),
                plan=metadata.get("plan_id"),
                customer_ref=_ref(obj.get("customer")),
                subscription_ref=subscription_ref,
                billing_reason=obj.get("billing_reason"),
            )

        return BillingEvent(event_id=event_id, kind=kind, provider_type=self.provider_type)

    @staticmethod
    def _period_end(subscription: dict[str, Any]) -> Any:
        """Newer API versions moved the billing period onto subscription items."""
        if subscription.get("current_period_end") is not None:
            return subscription["current_period_end"]
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            return items[0].get("current_period_end")
        return None

    @staticmethod
    def _invoice_subscription(invoice: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
        """Subscription reference and metadata of an invoice, across API versions."""
        details = invoice.get("subscription_details") or {}
        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_ref = _ref(invoice.get("subscription")) or _ref(
            parent_details.get("subscription")
        )
        metadata = details.get("metadata") or parent_details.get("metadata") or {}
        return subscription_ref, metadata
