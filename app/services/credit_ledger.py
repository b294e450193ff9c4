"""
Credit Ledger - Entitlement state machine and append-only credit history.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change is a single atomic delta on the entitlement row plus a
history entry in the same transaction. Mutating methods take ``commit`` so
callers can group several ledger operations (and their own rows) into one
transaction.
"""

import math
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.db.models import CreditHistoryEntry, Entitlement
from app.exceptions import (
    EntitlementNotFoundError,
    InsufficientCreditsError,
    PersistenceError,
)
from app.models.api import EntitlementStatus, HistoryKind, Plan
from app.models.domain import (
    EntitlementData,
    EntitlementReport,
    ExpirationSummary,
    LedgerEntryData,
)
from app.observability.logging import get_logger
from app.observability.metrics import metrics

logger = get_logger(__name__)

GRANT_KINDS = frozenset({HistoryKind.PURCHASE, HistoryKind.REFUND, HistoryKind.ADJUSTMENT})

SECONDS_PER_DAY = 86_400


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def days_until(end: datetime, now: datetime) -> int:
    """Whole days left before ``end``, rounded up, never negative."""
    return max(0, math.ceil((end - now).total_seconds() / SECONDS_PER_DAY))


def days_since(start: datetime, now: datetime) -> int:
    """Whole days elapsed since ``start``, rounded up, never negative."""
    return max(0, math.ceil((now - start).total_seconds() / SECONDS_PER_DAY))


def compute_entitlement_status(
    *,
    plan: Plan,
    credits: int,
    trial_ends_at: datetime,
    subscription_status: str,
    now: datetime,
    grace_credit_threshold: int = 10,
    grace_days_threshold: int = 1,
) -> EntitlementStatus:
    """
    Derive the entitlement status.

    Precedence:
    1. starter/pro with an active subscription => active
    2. payg has no trial window: no credits => exhausted, low => grace
    3. no credits and trial over => expired
    4. no credits => exhausted
    5. trial over => expired
    6. last day of trial or low credits => grace
    7. otherwise active
    """
    if plan.is_subscription and subscription_status == "active":
        return EntitlementStatus.ACTIVE

    if plan == Plan.PAYG:
        if credits <= 0:
            return EntitlementStatus.EXHAUSTED
        if credits <= grace_credit_threshold:
            return EntitlementStatus.GRACE
        return EntitlementStatus.ACTIVE

    trial_over = now > trial_ends_at
    if credits <= 0 and trial_over:
        return EntitlementStatus.EXPIRED
    if credits <= 0:
        return EntitlementStatus.EXHAUSTED
    if trial_over:
        return EntitlementStatus.EXPIRED
    if (
        days_until(trial_ends_at, now) <= grace_days_threshold
        or credits <= grace_credit_threshold
    ):
        return EntitlementStatus.GRACE
    return EntitlementStatus.ACTIVE


def _status_message(status: EntitlementStatus, plan: Plan, credits: int, days_left: int) -> str:
    """User-facing explanation for a status."""
    if status == EntitlementStatus.ACTIVE and plan.is_subscription:
        return f"{plan.value.capitalize()} plan active. {credits} credits remaining."
    if status == EntitlementStatus.ACTIVE and plan == Plan.PAYG:
        return f"Pay-as-you-go active. {credits} credits remaining."
    if status == EntitlementStatus.ACTIVE:
        return f"Free trial active. {days_left} days and {credits} credits remaining."
    if status == EntitlementStatus.GRACE and plan == Plan.PAYG:
        return f"Running low! {credits} credits remaining."
    if status == EntitlementStatus.GRACE:
        return f"Trial ending soon! {days_left} days and {credits} credits remaining."
    if status == EntitlementStatus.EXHAUSTED and plan == Plan.TRIAL:
        return (
            f"Free trial credits exhausted. {days_left} days remaining - upgrade to continue."
        )
    if status == EntitlementStatus.EXHAUSTED:
        return "No credits remaining. Purchase credits or upgrade to continue."
    if credits <= 0:
        return "Free trial expired. Please upgrade to continue."
    return "Free trial period ended. Please upgrade to continue."


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate store failures into PersistenceError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("ledger_store_error", operation=operation, error=str(e))
        metrics.record_error(type(e).__name__, operation)
        raise PersistenceError(f"{operation} failed: {e}") from e


class CreditLedger:
    """
    Sole authority over entitlement balances and plan/trial state.

    Balance changes follow the pattern:
    1. Single conditional UPDATE applying a delta (RETURNING the new balance)
    2. Append the matching history entry
    3. Flush, then commit unless the caller owns the transaction
    """

    def __init__(self, session: AsyncSession, config: Settings = settings) -> None:
        """Initialize ledger with database session and pricing configuration."""
        self.session = session
        self.config = config

    # ========================================================================
    # Provisioning & Reads
    # ========================================================================

    async def provision(
        self, user_id: str, now: datetime | None = None, commit: bool = True
    ) -> EntitlementData:
        """
        Get the user's entitlement, creating it with trial defaults on first contact.

        The initial trial credits are recorded as an adjustment entry so that
        replaying history reproduces the balance from creation.

        With commit=False the rows are only flushed into the caller's
        transaction; losing a concurrent-creation race then raises
        PersistenceError and the caller's transaction must be retried.
        """
        existing = await self._find(user_id)
        if existing is not None:
            return self._to_domain(existing)

        now = now or _utc_now()
        entitlement = Entitlement(
            user_id=user_id,
            plan=Plan.TRIAL.value,
            credits=self.config.trial_credits,
            trial_ends_at=now + timedelta(days=self.config.trial_days),
            subscription_status="none",
            cancel_at_period_end=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entitlement)

        try:
            # History rows reference the entitlement, so it is inserted first
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            if not commit:
                raise PersistenceError(
                    f"Entitlement for user {user_id} created concurrently"
                ) from e
            # Race condition - entitlement created by another request
            existing = await self._find(user_id)
            if existing is None:
                raise PersistenceError(f"Entitlement creation failed for user {user_id}") from e
            return self._to_domain(existing)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"provision failed: {e}") from e

        self.session.add(
            CreditHistoryEntry(
                user_id=user_id,
                kind=HistoryKind.ADJUSTMENT,
                amount=self.config.trial_credits,
                credits_before=0,
                credits_after=self.config.trial_credits,
                description=f"Free trial credits ({self.config.trial_credits})",
                expirable=False,
                created_at=now,
            )
        )
        with _store_errors("provision"):
            if commit:
                await self.session.commit()
            else:
                await self.session.flush()

        metrics.entitlements_provisioned_total.inc()
        logger.info(
            "entitlement_provisioned",
            user_id=user_id,
            credits=self.config.trial_credits,
            trial_ends_at=entitlement.trial_ends_at.isoformat(),
        )
        return self._to_domain(entitlement)

    async def get_entitlement(self, user_id: str) -> EntitlementData:
        """
        Get entitlement by user id.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        with _store_errors("get_entitlement"):
            entitlement = await self._find(user_id)
        if entitlement is None:
            raise EntitlementNotFoundError(user_id)
        return self._to_domain(entitlement)

    async def find_by_customer_ref(self, customer_ref: str) -> EntitlementData | None:
        """Find the entitlement linked to a payment-provider customer."""
        with _store_errors("find_by_customer_ref"):
            result = await self.session.execute(
                select(Entitlement)
                .where(Entitlement.payment_customer_ref == customer_ref)
                .execution_options(populate_existing=True)
            )
            entitlement = result.scalars().first()
        return self._to_domain(entitlement) if entitlement else None

    async def find_by_subscription_ref(self, subscription_ref: str) -> EntitlementData | None:
        """Find the entitlement linked to a payment-provider subscription."""
        with _store_errors("find_by_subscription_ref"):
            result = await self.session.execute(
                select(Entitlement)
                .where(Entitlement.subscription_ref == subscription_ref)
                .execution_options(populate_existing=True)
            )
            entitlement = result.scalars().first()
        return self._to_domain(entitlement) if entitlement else None

    async def check_entitlement(
        self, user_id: str, now: datetime | None = None
    ) -> EntitlementReport:
        """
        Advisory entitlement check. Never mutates.

        The true gate for spending is try_spend; this only fails fast before
        expensive work.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        data = await self.get_entitlement(user_id)
        now = now or _utc_now()

        status = compute_entitlement_status(
            plan=data.plan,
            credits=data.credits,
            trial_ends_at=data.trial_ends_at,
            subscription_status=data.subscription_status,
            now=now,
            grace_credit_threshold=self.config.grace_credit_threshold,
            grace_days_threshold=self.config.grace_days_threshold,
        )
        days_left = days_until(data.trial_ends_at, now)
        metrics.record_entitlement_check(status.value)

        return EntitlementReport(
            user_id=user_id,
            status=status,
            plan=data.plan,
            credits=data.credits,
            days_remaining=days_left,
            days_used=days_since(data.created_at, now),
            trial_ends_at=data.trial_ends_at,
            subscription_status=data.subscription_status,
            message=_status_message(status, data.plan, data.credits, days_left),
        )

    # ========================================================================
    # Balance Mutations
    # ========================================================================

    async def try_spend(
        self,
        user_id: str,
        amount: int,
        related_generation_id: UUID | None = None,
        description: str = "Workflow generation",
        commit: bool = True,
    ) -> int:
        """
        Atomically spend credits. Returns the new balance.

        Single conditional update: decrement where credits >= amount. If the
        predicate fails nothing is touched.

        Raises:
            InsufficientCreditsError: Balance below amount
            EntitlementNotFoundError: User has no entitlement
        """
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive: {amount}")

        with _store_errors("try_spend"):
            result = await self.session.execute(
                update(Entitlement)
                .where(Entitlement.user_id == user_id, Entitlement.credits >= amount)
                .values(credits=Entitlement.credits - amount)
                .returning(Entitlement.credits)
            )
            credits_after = result.scalar_one_or_none()

            if credits_after is None:
                balance = await self.session.scalar(
                    select(Entitlement.credits).where(Entitlement.user_id == user_id)
                )
                metrics.record_spend(success=False)
                if balance is None:
                    raise EntitlementNotFoundError(user_id)
                logger.info(
                    "credit_spend_rejected",
                    user_id=user_id,
                    balance=balance,
                    required=amount,
                )
                raise InsufficientCreditsError(balance, amount)

            self._append(
                user_id=user_id,
                kind=HistoryKind.USAGE,
                amount=-amount,
                credits_after=credits_after,
                description=description,
                related_generation_id=related_generation_id,
            )
            await self.session.flush()
            if commit:
                await self.session.commit()

        metrics.record_spend(success=True)
        logger.info(
            "credit_spend_succeeded",
            user_id=user_id,
            amount=amount,
            credits_after=credits_after,
            related_generation_id=str(related_generation_id) if related_generation_id else None,
        )
        return credits_after

    async def grant(
        self,
        user_id: str,
        amount: int,
        kind: HistoryKind,
        related_event_id: str | None = None,
        description: str | None = None,
        expirable: bool = False,
        commit: bool = True,
    ) -> int:
        """
        Atomically add credits (purchase, refund, adjustment). Returns the new balance.

        ``expirable`` marks one-time purchases subject to the expiry batch.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive: {amount}")
        if kind not in GRANT_KINDS:
            raise ValueError(f"Cannot grant credits as {kind.value}")

        with _store_errors("grant"):
            result = await self.session.execute(
                update(Entitlement)
                .where(Entitlement.user_id == user_id)
                .values(credits=Entitlement.credits + amount)
                .returning(Entitlement.credits)
            )
            credits_after = result.scalar_one_or_none()
            if credits_after is None:
                raise EntitlementNotFoundError(user_id)

            self._append(
                user_id=user_id,
                kind=kind,
                amount=amount,
                credits_after=credits_after,
                description=description or f"{kind.value.capitalize()} of {amount} credits",
                related_event_id=related_event_id,
                expirable=expirable,
            )
            await self.session.flush()
            if commit:
                await self.session.commit()

        metrics.record_grant(kind.value, amount)
        logger.info(
            "credits_granted",
            user_id=user_id,
            amount=amount,
            kind=kind.value,
            credits_after=credits_after,
            related_event_id=related_event_id,
        )
        return credits_after

    async def top_up_to(
        self,
        user_id: str,
        ceiling: int,
        kind: HistoryKind = HistoryKind.PURCHASE,
        related_event_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> int:
        """
        Raise the balance to ``ceiling`` if below it; never lowers it.

        Renewal semantics: a monthly allowance resets to the plan ceiling
        rather than accumulating. The shortfall is applied as an atomic delta
        and recorded only when positive.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        if kind not in GRANT_KINDS:
            raise ValueError(f"Cannot top up credits as {kind.value}")

        with _store_errors("top_up_to"):
            entitlement = await self._find(user_id, for_update=True)
            if entitlement is None:
                raise EntitlementNotFoundError(user_id)

            delta = ceiling - entitlement.credits
            if delta <= 0:
                logger.info(
                    "top_up_not_needed",
                    user_id=user_id,
                    ceiling=ceiling,
                    credits=entitlement.credits,
                )
                if commit:
                    await self.session.commit()
                return entitlement.credits

        return await self.grant(
            user_id,
            delta,
            kind,
            related_event_id=related_event_id,
            description=description or f"Allowance top-up to {ceiling} credits",
            commit=commit,
        )

    # ========================================================================
    # Plan & Subscription State
    # ========================================================================

    async def set_plan(
        self,
        user_id: str,
        plan: Plan,
        subscription_status: str,
        commit: bool = True,
    ) -> EntitlementData:
        """
        Update plan and subscription status. Never touches credits.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        with _store_errors("set_plan"):
            result = await self.session.execute(
                update(Entitlement)
                .where(Entitlement.user_id == user_id)
                .values(plan=plan.value, subscription_status=subscription_status)
                .returning(Entitlement.user_id)
            )
            if result.scalar_one_or_none() is None:
                raise EntitlementNotFoundError(user_id)
            await self.session.flush()
            if commit:
                await self.session.commit()

        logger.info(
            "plan_updated",
            user_id=user_id,
            plan=plan.value,
            subscription_status=subscription_status,
        )
        return await self.get_entitlement(user_id)

    async def update_subscription(
        self,
        user_id: str,
        *,
        subscription_status: str | None = None,
        payment_customer_ref: str | None = None,
        subscription_ref: str | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
        commit: bool = True,
    ) -> EntitlementData:
        """
        Update stored subscription fields. Only fields that are not None change.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        changes = {
            "subscription_status": subscription_status,
            "payment_customer_ref": payment_customer_ref,
            "subscription_ref": subscription_ref,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
        }
        values = {key: value for key, value in changes.items() if value is not None}

        with _store_errors("update_subscription"):
            if values:
                result = await self.session.execute(
                    update(Entitlement)
                    .where(Entitlement.user_id == user_id)
                    .values(**values)
                    .returning(Entitlement.user_id)
                )
                if result.scalar_one_or_none() is None:
                    raise EntitlementNotFoundError(user_id)
                await self.session.flush()
            if commit:
                await self.session.commit()

        logger.info("subscription_fields_updated", user_id=user_id, fields=sorted(values))
        return await self.get_entitlement(user_id)

    # ========================================================================
    # History & Reconciliation
    # ========================================================================

    async def list_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        """List history entries newest first, with the total count."""
        with _store_errors("list_history"):
            total = await self.session.scalar(
                select(func.count())
                .select_from(CreditHistoryEntry)
                .where(CreditHistoryEntry.user_id == user_id)
            )
            result = await self.session.execute(
                select(CreditHistoryEntry)
                .where(CreditHistoryEntry.user_id == user_id)
                .order_by(CreditHistoryEntry.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            entries = [self._entry_to_domain(row) for row in result.scalars().all()]
        return entries, total or 0

    async def replay_balance(self, user_id: str) -> int:
        """Sum of every history delta for the user."""
        with _store_errors("replay_balance"):
            total = await self.session.scalar(
                select(func.coalesce(func.sum(CreditHistoryEntry.amount), 0)).where(
                    CreditHistoryEntry.user_id == user_id
                )
            )
        return int(total or 0)

    async def verify_conservation(self, user_id: str) -> bool:
        """
        Check that replaying history reproduces the current balance.

        Raises:
            EntitlementNotFoundError: User has no entitlement
        """
        data = await self.get_entitlement(user_id)
        replayed = await self.replay_balance(user_id)
        if replayed != data.credits:
            logger.error(
                "conservation_violation",
                user_id=user_id,
                credits=data.credits,
                replayed=replayed,
            )
            metrics.record_error("ConservationViolation", "verify_conservation")
            return False
        return True

    async def expire_aged_purchased_credits(
        self, now: datetime | None = None, dry_run: bool = False
    ) -> ExpirationSummary:
        """
        Expire one-time purchased credits older than the expiry window.

        For each expirable purchase entry not yet consumed: deduct
        min(original amount, current balance), append an expiration entry when
        that is positive, and mark the source consumed. Each purchase is its
        own transaction, so re-running is a no-op for entries already handled.
        """
        now = now or _utc_now()
        cutoff = now - timedelta(days=self.config.purchased_credit_expiry_days)

        with _store_errors("expire_aged_purchased_credits"):
            result = await self.session.execute(
                select(CreditHistoryEntry.id)
                .where(
                    CreditHistoryEntry.kind == HistoryKind.PURCHASE,
                    CreditHistoryEntry.expirable.is_(True),
                    CreditHistoryEntry.consumed_at.is_(None),
                    CreditHistoryEntry.created_at < cutoff,
                )
                .order_by(CreditHistoryEntry.created_at)
            )
            candidate_ids = list(result.scalars().all())

            if dry_run:
                return await self._preview_expiration(candidate_ids)

            processed = 0
            expired_total = 0
            affected: set[str] = set()
            for entry_id in candidate_ids:
                expired = await self._expire_purchase(entry_id, now)
                if expired is None:
                    continue
                processed += 1
                user_id, amount = expired
                if amount > 0:
                    expired_total += amount
                    affected.add(user_id)

        if expired_total:
            metrics.record_expiration(expired_total)
        logger.info(
            "purchased_credits_expired",
            processed_purchases=processed,
            expired_credits=expired_total,
            affected_users=len(affected),
        )
        return ExpirationSummary(
            processed_purchases=processed,
            expired_credits=expired_total,
            affected_users=len(affected),
        )

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    async def _expire_purchase(self, entry_id: UUID, now: datetime) -> tuple[str, int] | None:
        """Expire a single purchase entry. Returns (user_id, expired amount) or None if skipped."""
        purchase = await self.session.scalar(
            select(CreditHistoryEntry)
            .where(CreditHistoryEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if purchase is None or purchase.consumed_at is not None:
            # Handled by a concurrent run
            await self.session.rollback()
            return None

        user_id = purchase.user_id
        expired = 0
        while True:
            balance = await self.session.scalar(
                select(Entitlement.credits).where(Entitlement.user_id == user_id).with_for_update()
            )
            to_expire = min(purchase.amount, balance or 0)
            if to_expire <= 0:
                break
            result = await self.session.execute(
                update(Entitlement)
                .where(Entitlement.user_id == user_id, Entitlement.credits >= to_expire)
                .values(credits=Entitlement.credits - to_expire)
                .returning(Entitlement.credits)
            )
            credits_after = result.scalar_one_or_none()
            if credits_after is None:
                # Balance moved underneath us; recompute
                continue
            self._append(
                user_id=user_id,
                kind=HistoryKind.EXPIRATION,
                amount=-to_expire,
                credits_after=credits_after,
                description=(
                    f"Purchased credits expired ({self.config.purchased_credit_expiry_days} days)"
                    f" - {to_expire} credits"
                ),
                related_event_id=purchase.related_event_id,
            )
            expired = to_expire
            break

        purchase.consumed_at = now
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "purchase_expiry_processed",
            user_id=user_id,
            purchase_id=str(entry_id),
            original_amount=purchase.amount,
            expired=expired,
        )
        return user_id, expired

    async def _preview_expiration(self, candidate_ids: list[UUID]) -> ExpirationSummary:
        """Report what a real run would expire without mutating anything."""
        if not candidate_ids:
            return ExpirationSummary(processed_purchases=0, expired_credits=0, affected_users=0)

        result = await self.session.execute(
            select(CreditHistoryEntry.user_id, CreditHistoryEntry.amount, Entitlement.credits)
            .join(Entitlement, Entitlement.user_id == CreditHistoryEntry.user_id)
            .where(CreditHistoryEntry.id.in_(candidate_ids))
            .order_by(CreditHistoryEntry.created_at)
        )
        remaining: dict[str, int] = {}
        expired_total = 0
        affected: set[str] = set()
        for user_id, amount, credits in result.all():
            balance = remaining.get(user_id, credits)
            to_expire = min(amount, balance)
            if to_expire > 0:
                expired_total += to_expire
                affected.add(user_id)
            remaining[user_id] = balance - max(to_expire, 0)

        return ExpirationSummary(
            processed_purchases=len(candidate_ids),
            expired_credits=expired_total,
            affected_users=len(affected),
        )

    def _append(
        self,
        *,
        user_id: str,
        kind: HistoryKind,
        amount: int,
        credits_after: int,
        description: str,
        related_generation_id: UUID | None = None,
        related_event_id: str | None = None,
        expirable: bool = False,
    ) -> CreditHistoryEntry:
        """Stage a history entry consistent with the post-update balance."""
        entry = CreditHistoryEntry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            credits_before=credits_after - amount,
            credits_after=credits_after,
            description=description,
            related_generation_id=related_generation_id,
            related_event_id=related_event_id,
            expirable=expirable,
            created_at=_utc_now(),
        )
        self.session.add(entry)
        return entry

    async def _find(self, user_id: str, for_update: bool = False) -> Entitlement | None:
        """Load the entitlement row, refreshing any stale identity-map copy."""
        stmt = (
            select(Entitlement)
            .where(Entitlement.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_domain(entitlement: Entitlement) -> EntitlementData:
        """Convert ORM model to domain model."""
        return EntitlementData(
            user_id=entitlement.user_id,
            plan=Plan(entitlement.plan),
            credits=entitlement.credits,
            trial_ends_at=entitlement.trial_ends_at,
            subscription_status=entitlement.subscription_status,
            payment_customer_ref=entitlement.payment_customer_ref,
            subscription_ref=entitlement.subscription_ref,
            current_period_end=entitlement.current_period_end,
            cancel_at_period_end=entitlement.cancel_at_period_end,
            created_at=entitlement.created_at,
            updated_at=entitlement.updated_at,
        )

    @staticmethod
    def _entry_to_domain(entry: CreditHistoryEntry) -> LedgerEntryData:
        """Convert ORM model to domain model."""
        return LedgerEntryData(
            entry_id=entry.id,
            user_id=entry.user_id,
            kind=entry.kind,
            amount=entry.amount,
            credits_before=entry.credits_before,
            credits_after=entry.credits_after,
            description=entry.description,
            related_generation_id=entry.related_generation_id,
            related_event_id=entry.related_event_id,
            created_at=entry.created_at,
        )
