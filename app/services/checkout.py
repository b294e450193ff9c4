"""
Checkout Service - Opens hosted payment-provider checkouts for plans and credit packs.

The webhook that follows a completed checkout is what changes the ledger;
this service only prices the purchase and tags it with the buyer.
"""

from app.config import Settings, settings
from app.exceptions import ValidationError
from app.models.api import Plan
from app.models.domain import CheckoutIntent, CheckoutSession
from app.observability.logging import get_logger
from app.services.credit_ledger import CreditLedger
from app.services.payment_provider import CheckoutProvider

logger = get_logger(__name__)


class CheckoutService:
    """Builds checkout intents from pricing configuration."""

    def __init__(self, provider: CheckoutProvider, config: Settings = settings) -> None:
        self.provider = provider
        self.config = config

    async def start(
        self,
        ledger: CreditLedger,
        user_id: str,
        plan: Plan,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Open a checkout for the user.

        Raises:
            ValidationError: Plan not purchasable, not priced, or already active
            PaymentProviderError: Provider rejected the session
        """
        if plan == Plan.TRIAL:
            raise ValidationError("The trial plan cannot be purchased")
        price_ref = self.config.price_for(plan.value)
        if not price_ref:
            raise ValidationError(f"No price configured for plan {plan.value}")

        entitlement = await ledger.provision(user_id)
        if (
            plan.is_subscription
            and entitlement.plan == plan
            and entitlement.subscription_status == "active"
        ):
            raise ValidationError(f"Already subscribed to the {plan.value} plan")

        intent = CheckoutIntent(
            user_id=user_id,
            plan=plan,
            price_ref=price_ref,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_ref=entitlement.payment_customer_ref,
            credits=None if plan.is_subscription else self.config.payg_pack_credits,
        )
        session = await self.provider.create_checkout_session(intent)
        logger.info(
            "checkout_started",
            user_id=user_id,
            plan=plan.value,
            mode=intent.mode,
            session_id=session.session_id,
        )
        return session
