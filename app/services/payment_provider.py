"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Protocol

from app.models.domain import BillingEvent, CheckoutIntent, CheckoutSession


class PaymentEventVerifier(Protocol):
    """
    Payment event verifier protocol.

    Any payment provider (Stripe, Paddle, etc.) must implement this interface
    so the reconciler stays provider-agnostic.
    """

    provider_type: str

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse a webhook event from the provider.

        Args:
            payload: Raw webhook payload
            signature: Webhook signature for verification

        Returns:
            Provider-agnostic billing event

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        ...


class CheckoutProvider(Protocol):
    """Payment provider able to open a hosted checkout for a plan or credit pack."""

    provider_type: str

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a checkout session.

        Raises:
            PaymentProviderError: If the provider API call fails
        """
        ...
