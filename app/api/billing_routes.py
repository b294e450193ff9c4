"""
Billing Routes - Checkout, payment-provider webhooks and scheduled credit expiry.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.dependencies import (
    Principal,
    get_checkout_service,
    get_ledger,
    get_principal,
    get_reconciler,
    verify_cron_secret,
)
from app.exceptions import WebhookVerificationError
from app.models.api import (
    CheckoutRequest,
    CheckoutResponse,
    ExpireCreditsResponse,
    WebhookAckResponse,
)
from app.observability.logging import get_logger
from app.services.billing_reconciler import BillingEventReconciler
from app.services.checkout import CheckoutService
from app.services.credit_ledger import CreditLedger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/v1/billing/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    principal: Principal = Depends(get_principal),
    ledger: CreditLedger = Depends(get_ledger),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """
    Open a hosted checkout for a subscription plan or a credit pack.

    Credits and plan changes are applied by the webhook once payment completes.

    Auth: Bearer {jwt}
    """
    session = await checkout.start(
        ledger, principal.user_id, body.plan, body.success_url, body.cancel_url
    )
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/v1/billing/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Duplicates, unknown kinds and authentic but malformed events are
    acknowledged with 200 so the provider stops redelivering them. Signature
    failures return 400 and record nothing.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        outcome = await reconciler.handle(payload, signature)
    except WebhookVerificationError as exc:
        logger.error("stripe_webhook_verification_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    return WebhookAckResponse(outcome=outcome)


@router.post(
    "/v1/billing/credits/expire",
    response_model=ExpireCreditsResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def expire_purchased_credits(
    dry_run: bool = Query(False),
    ledger: CreditLedger = Depends(get_ledger),
) -> ExpireCreditsResponse:
    """
    Expire the unused remainder of aged one-time credit purchases.

    Auth: Bearer {CRON_SECRET}
    """
    summary = await ledger.expire_aged_purchased_credits(dry_run=dry_run)
    return ExpireCreditsResponse(
        processed_purchases=summary.processed_purchases,
        expired_credits=summary.expired_credits,
        affected_users=summary.affected_users,
    )
