"""
Billing Event Reconciler - Applies payment-provider events to the credit ledger.

Each event is applied exactly once: the ProcessedEvent row is inserted in the
same transaction as the ledger mutation, so a crash or a concurrent duplicate
delivery can never leave a partially applied event.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.db.models import ProcessedEvent
from app.exceptions import EntitlementNotFoundError, MalformedEventError
from app.models.api import BillingEventKind, HistoryKind, Plan, ReconciliationOutcome
from app.models.domain import BillingEvent
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.services.credit_ledger import CreditLedger
from app.services.payment_provider import PaymentEventVerifier

logger = get_logger(__name__)

PLAN_ALIASES: dict[str, Plan] = {
    "starter": Plan.STARTER,
    "pro": Plan.PRO,
    "payg": Plan.PAYG,
    "pay_as_you_go": Plan.PAYG,
}


def resolve_plan(plan_id: str | None) -> Plan | None:
    """Map a checkout/subscription plan identifier onto a Plan."""
    if not plan_id:
        return None
    return PLAN_ALIASES.get(plan_id.strip().lower())


class BillingEventReconciler:
    """
    Idempotent payment event handler.

    Tolerates at-least-once and out-of-order delivery. Signature failures are
    rejected without being recorded; unknown kinds are recorded as ignored and
    authentic but malformed events as dropped, so neither blocks the
    provider's delivery queue.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: PaymentEventVerifier,
        config: Settings = settings,
    ) -> None:
        self.session_factory = session_factory
        self.verifier = verifier
        self.config = config

    async def handle(self, payload: bytes, signature: str) -> ReconciliationOutcome:
        """
        Verify and apply a raw webhook delivery.

        Raises:
            WebhookVerificationError: Signature invalid (nothing recorded)
            PersistenceError: Store unavailable (nothing recorded, safe to retry)
        """
        event = await self.verifier.verify_webhook(payload, signature)
        return await self.apply(event)

    async def apply(self, event: BillingEvent) -> ReconciliationOutcome:
        """Apply a verified event exactly once."""
        async with self.session_factory() as session:
            if await session.get(ProcessedEvent, event.event_id) is not None:
                logger.info(
                    "webhook_event_duplicate", event_id=event.event_id, kind=event.kind.value
                )
                metrics.record_webhook_event(
                    event.kind.value, ReconciliationOutcome.DUPLICATE.value
                )
                return ReconciliationOutcome.DUPLICATE

            ledger = CreditLedger(session, self.config)
            try:
                outcome = await self._dispatch(ledger, event)
            except MalformedEventError as e:
                await session.rollback()
                logger.warning(
                    "webhook_event_dropped",
                    event_id=event.event_id,
                    kind=event.kind.value,
                    reason=e.reason,
                )
                outcome = ReconciliationOutcome.DROPPED

            session.add(
                ProcessedEvent(
                    event_id=event.event_id,
                    event_kind=event.kind.value,
                    outcome=outcome.value,
                )
            )
            try:
                await session.flush()
                await session.commit()
            except IntegrityError:
                # Concurrent delivery of the same event committed first
                await session.rollback()
                logger.info(
                    "webhook_event_duplicate_race",
                    event_id=event.event_id,
                    kind=event.kind.value,
                )
                outcome = ReconciliationOutcome.DUPLICATE

        metrics.record_webhook_event(event.kind.value, outcome.value)
        logger.info(
            "webhook_event_processed",
            event_id=event.event_id,
            kind=event.kind.value,
            outcome=outcome.value,
            user_id=event.user_id,
        )
        return outcome

    async def _dispatch(self, ledger: CreditLedger, event: BillingEvent) -> ReconciliationOutcome:
        """Route an event to its handler. Ledger calls never commit here."""
        try:
            if event.kind == BillingEventKind.CHECKOUT_COMPLETED:
                return await self._checkout_completed(ledger, event)
            if event.kind == BillingEventKind.SUBSCRIPTION_UPDATED:
                return await self._subscription_updated(ledger, event)
            if event.kind == BillingEventKind.SUBSCRIPTION_DELETED:
                return await self._subscription_deleted(ledger, event)
            if event.kind == BillingEventKind.INVOICE_PAYMENT_SUCCEEDED:
                return await self._invoice_payment_succeeded(ledger, event)
            if event.kind == BillingEventKind.INVOICE_PAYMENT_FAILED:
                return await self._invoice_payment_failed(ledger, event)
            if event.kind == BillingEventKind.TRIAL_WILL_END:
                logger.info(
                    "subscription_trial_will_end",
                    event_id=event.event_id,
                    user_id=event.user_id,
                    subscription_ref=event.subscription_ref,
                )
                return ReconciliationOutcome.APPLIED
        except EntitlementNotFoundError as e:
            raise MalformedEventError(event.event_id, f"unknown user {e.user_id}") from e

        logger.info("webhook_event_ignored", event_id=event.event_id, kind=event.kind.value)
        return ReconciliationOutcome.IGNORED

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _checkout_completed(
        self, ledger: CreditLedger, event: BillingEvent
    ) -> ReconciliationOutcome:
        if not event.user_id:
            raise MalformedEventError(event.event_id, "missing user reference")
        if event.mode not in ("subscription", "payment"):
            raise MalformedEventError(event.event_id, f"unsupported checkout mode {event.mode!r}")

        # Buyers may pay before their first API call
        await ledger.provision(event.user_id, commit=False)

        if event.mode == "subscription":
            plan = resolve_plan(event.plan)
            if plan is None or not plan.is_subscription:
                raise MalformedEventError(event.event_id, f"unknown plan {event.plan!r}")
            allowance = self.config.plan_allowance(plan.value)
            if allowance is None:
                raise MalformedEventError(event.event_id, f"no allowance for plan {plan.value}")

            await ledger.set_plan(event.user_id, plan, "active", commit=False)
            await ledger.update_subscription(
                event.user_id,
                payment_customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
                commit=False,
            )
            await ledger.grant(
                event.user_id,
                allowance,
                HistoryKind.PURCHASE,
                related_event_id=event.event_id,
                description=f"{plan.value.capitalize()} plan monthly allowance",
                commit=False,
            )
            logger.info(
                "subscription_checkout_applied",
                user_id=event.user_id,
                plan=plan.value,
                credits=allowance,
            )
            return ReconciliationOutcome.APPLIED

        plan = resolve_plan(event.plan)
        if event.plan and plan != Plan.PAYG:
            raise MalformedEventError(event.event_id, f"unknown credit pack {event.plan!r}")
        credits = event.credits if event.credits is not None else self.config.payg_pack_credits
        if credits <= 0:
            raise MalformedEventError(event.event_id, f"invalid credit amount {credits}")

        await ledger.grant(
            event.user_id,
            credits,
            HistoryKind.PURCHASE,
            related_event_id=event.event_id,
            description=f"Credits purchase - {credits} credits",
            expirable=True,
            commit=False,
        )
        entitlement = await ledger.get_entitlement(event.user_id)
        if entitlement.plan == Plan.TRIAL:
            await ledger.set_plan(
                event.user_id, Plan.PAYG, entitlement.subscription_status, commit=False
            )
        if event.customer_ref and not entitlement.payment_customer_ref:
            await ledger.update_subscription(
                event.user_id, payment_customer_ref=event.customer_ref, commit=False
            )
        logger.info("credit_purchase_applied", user_id=event.user_id, credits=credits)
        return ReconciliationOutcome.APPLIED

    async def _subscription_updated(
        self, ledger: CreditLedger, event: BillingEvent
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_user(ledger, event)
        await ledger.update_subscription(
            user_id,
            subscription_status=event.subscription_status,
            payment_customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
            current_period_end=event.current_period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            commit=False,
        )
        return ReconciliationOutcome.APPLIED

    async def _subscription_deleted(
        self, ledger: CreditLedger, event: BillingEvent
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_user(ledger, event)
        await ledger.set_plan(user_id, Plan.TRIAL, "inactive", commit=False)
        await ledger.update_subscription(user_id, cancel_at_period_end=False, commit=False)
        return ReconciliationOutcome.APPLIED

    async def _invoice_payment_succeeded(
        self, ledger: CreditLedger, event: BillingEvent
    ) -> ReconciliationOutcome:
        if not event.subscription_ref:
            logger.info("invoice_without_subscription_ignored", event_id=event.event_id)
            return ReconciliationOutcome.IGNORED

        user_id = await self._resolve_user(ledger, event)
        entitlement = await ledger.get_entitlement(user_id)
        plan = entitlement.plan if entitlement.plan.is_subscription else resolve_plan(event.plan)
        if plan is None or not plan.is_subscription:
            raise MalformedEventError(event.event_id, "invoice without a subscription plan")
        allowance = self.config.plan_allowance(plan.value)
        if allowance is None:
            raise MalformedEventError(event.event_id, f"no allowance for plan {plan.value}")

        if entitlement.subscription_status != "active":
            await ledger.update_subscription(user_id, subscription_status="active", commit=False)
        await ledger.top_up_to(
            user_id,
            allowance,
            HistoryKind.PURCHASE,
            related_event_id=event.event_id,
            description=f"{plan.value.capitalize()} plan renewal",
            commit=False,
        )
        return ReconciliationOutcome.APPLIED

    async def _invoice_payment_failed(
        self, ledger: CreditLedger, event: BillingEvent
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_user(ledger, event)
        await ledger.update_subscription(user_id, subscription_status="past_due", commit=False)
        logger.warning("subscription_payment_failed", user_id=user_id, event_id=event.event_id)
        return ReconciliationOutcome.APPLIED

    async def _resolve_user(self, ledger: CreditLedger, event: BillingEvent) -> str:
        """Resolve the affected user from metadata, then subscription, then customer."""
        if event.user_id:
            return event.user_id
        if event.subscription_ref:
            found = await ledger.find_by_subscription_ref(event.subscription_ref)
            if found is not None:
                return found.user_id
        if event.customer_ref:
            found = await ledger.find_by_customer_ref(event.customer_ref)
            if found is not None:
                return found.user_id
        raise MalformedEventError(event.event_id, "cannot resolve user for event")
