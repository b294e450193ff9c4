"""
Generation Orchestrator - Entitlement check, context, generation, then billing.

NO DICTIONARIES - Returns immutable domain models.

Flow:
1. Provision and check the entitlement (advisory, no spend)
2. Build the generation context from the catalog
3. Call the generative capability (never billed on failure)
4. Spend one generation's credits, record the run, append the conversation
   messages - all in a single transaction
"""

import time
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.db.models import GenerationRecord
from app.exceptions import (
    ConversationNotFoundError,
    EntitlementError,
    GenerationError,
    InsufficientCreditsError,
    PersistenceError,
    ValidationError,
)
from app.models.api import EntitlementErrorKind, GenerationRequest, MessageRole
from app.models.domain import (
    EntitlementReport,
    GenerationOutcome,
    GenerationResult,
)
from app.observability.logging import get_logger, log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.context_builder import ContextBuilder
from app.services.conversation_store import ConversationStore, title_from_prompt
from app.services.credit_ledger import CreditLedger
from app.services.generation_client import GenerationClient

logger = get_logger(__name__)

MAX_SUGGESTIONS = 3


def _summarize(result: GenerationResult) -> str:
    """Assistant message text for a generated document."""
    if result.commentary:
        return result.commentary
    content = result.document.content
    if isinstance(content, dict) and isinstance(content.get("name"), str):
        return f"Generated workflow: {content['name']}"
    return "Generated workflow."


class GenerationOrchestrator:
    """Runs one prompt-to-workflow request end to end."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        context_builder: ContextBuilder,
        generation_client: GenerationClient,
        config: Settings = settings,
    ) -> None:
        self.session_factory = session_factory
        self.context_builder = context_builder
        self.generation_client = generation_client
        self.config = config

    async def process(
        self, user_id: str, request: GenerationRequest, fast: bool = False
    ) -> GenerationOutcome:
        """
        Generate a workflow for the user and bill it.

        Raises:
            ValidationError: Missing user
            EntitlementError: Entitlement refuses the generation
            ConversationNotFoundError: Conversation belongs to another user
            GenerationError: Generative capability failed (nothing billed)
            PersistenceError: Store or catalog unavailable before generation
        """
        if not user_id:
            raise ValidationError("user_id is required")

        with log_context(user_id=user_id), trace_operation(
            "workflow_generation", user_id=user_id, fast=fast
        ) as span:
            report, conversation_exists = await self._check(user_id, request.conversation_id)
            if not report.permits_spend:
                logger.info(
                    "generation_refused",
                    status=report.status.value,
                    credits=report.credits,
                )
                raise EntitlementError.from_status(report.status, report.message)

            context = await self.context_builder.build(request.prompt, request.attachments)

            generation_id = uuid4()
            span.set_attribute("generation_id", str(generation_id))
            start = time.perf_counter()
            try:
                result = await self.generation_client.generate(context, fast=fast)
            except GenerationError as e:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                await self._record_failure(
                    user_id,
                    request,
                    generation_id,
                    e,
                    elapsed_ms,
                    request.conversation_id if conversation_exists else None,
                )
                raise
            elapsed_ms = int((time.perf_counter() - start) * 1000)

            suggestions = tuple(tip.title for tip in context.tips[:MAX_SUGGESTIONS])
            outcome = await self._commit(
                user_id, request, generation_id, result, elapsed_ms, report, suggestions
            )
            span.set_attribute("billed", outcome.billed)
            return outcome

    async def _check(
        self, user_id: str, conversation_id: UUID | None
    ) -> tuple[EntitlementReport, bool]:
        """Provision, check the entitlement and the referenced conversation's owner."""
        async with self.session_factory() as session:
            ledger = CreditLedger(session, self.config)
            try:
                await ledger.provision(user_id)
                report = await ledger.check_entitlement(user_id)
                owner = None
                if conversation_id is not None:
                    owner = await ConversationStore(session).owner_of(conversation_id)
            except SQLAlchemyError as e:
                raise PersistenceError(f"entitlement check failed: {e}") from e

        if owner is not None and owner != user_id:
            raise ConversationNotFoundError(conversation_id)
        return report, owner is not None

    async def _commit(
        self,
        user_id: str,
        request: GenerationRequest,
        generation_id: UUID,
        result: GenerationResult,
        elapsed_ms: int,
        report: EntitlementReport,
        suggestions: tuple[str, ...],
    ) -> GenerationOutcome:
        """Spend and persist in one transaction; fall back to an unbilled outcome."""
        cost = self.config.generation_cost_credits
        async with self.session_factory() as session:
            ledger = CreditLedger(session, self.config)
            try:
                credits_remaining = await ledger.try_spend(
                    user_id,
                    cost,
                    related_generation_id=generation_id,
                    commit=False,
                )
                conversation_id = await self._persist_run(
                    session, user_id, request, generation_id, result, elapsed_ms, cost
                )
                await session.commit()
            except InsufficientCreditsError as e:
                await session.rollback()
                return await self._spend_race_lost(
                    user_id, request, generation_id, result, elapsed_ms, e, suggestions
                )
            except (SQLAlchemyError, PersistenceError, ConversationNotFoundError) as e:
                await session.rollback()
                logger.error(
                    "generation_persistence_failed",
                    generation_id=str(generation_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                metrics.record_unbilled_generation("persistence_failed")
                metrics.record_error(type(e).__name__, "generation_commit")
                return GenerationOutcome(
                    generation_id=generation_id,
                    document=result.document,
                    credits_remaining=report.credits,
                    conversation_id=None,
                    billed=False,
                    message=result.commentary,
                    suggestions=suggestions,
                )

        logger.info(
            "generation_committed",
            generation_id=str(generation_id),
            conversation_id=str(conversation_id),
            credits_remaining=credits_remaining,
        )
        return GenerationOutcome(
            generation_id=generation_id,
            document=result.document,
            credits_remaining=credits_remaining,
            conversation_id=conversation_id,
            billed=True,
            message=result.commentary,
            suggestions=suggestions,
        )

    async def _persist_run(
        self,
        session: AsyncSession,
        user_id: str,
        request: GenerationRequest,
        generation_id: UUID,
        result: GenerationResult,
        elapsed_ms: int,
        credits_used: int,
    ) -> UUID:
        """Stage the GenerationRecord, conversation and both messages. Does not commit."""
        store = ConversationStore(session)
        conversation = await store.ensure(
            user_id,
            request.conversation_id,
            title=title_from_prompt(request.prompt),
            commit=False,
        )
        session.add(
            GenerationRecord(
                id=generation_id,
                user_id=user_id,
                conversation_id=conversation.conversation_id,
                prompt=request.prompt,
                workflow_document=result.document.content,
                success=True,
                credits_used=credits_used,
                generation_time_ms=elapsed_ms,
            )
        )
        await store.add_message(
            conversation.conversation_id, MessageRole.USER, request.prompt, commit=False
        )
        await store.add_message(
            conversation.conversation_id,
            MessageRole.ASSISTANT,
            _summarize(result),
            intent="workflow_generation",
            metadata=self._assistant_metadata(generation_id, result),
            commit=False,
        )
        return conversation.conversation_id

    async def _spend_race_lost(
        self,
        user_id: str,
        request: GenerationRequest,
        generation_id: UUID,
        result: GenerationResult,
        elapsed_ms: int,
        error: InsufficientCreditsError,
        suggestions: tuple[str, ...],
    ) -> GenerationOutcome:
        """
        A concurrent request drained the balance after the advisory check.

        The run is still recorded with credits_used=0 so the user keeps the
        document and its conversation.
        """
        if not self.config.return_unbilled_on_spend_race:
            logger.info(
                "generation_spend_race_rejected",
                generation_id=str(generation_id),
                balance=error.balance,
            )
            raise EntitlementError(
                EntitlementErrorKind.INSUFFICIENT_CREDITS,
                "No credits remaining. Upgrade or purchase more credits to continue.",
            ) from error

        logger.warning(
            "generation_returned_unbilled",
            generation_id=str(generation_id),
            user_id=user_id,
            balance=error.balance,
            required=error.required,
        )
        metrics.record_unbilled_generation("spend_race")

        conversation_id: UUID | None = None
        async with self.session_factory() as session:
            try:
                conversation_id = await self._persist_run(
                    session, user_id, request, generation_id, result, elapsed_ms, 0
                )
                await session.commit()
            except (SQLAlchemyError, PersistenceError, ConversationNotFoundError) as e:
                await session.rollback()
                conversation_id = None
                logger.error(
                    "generation_persistence_failed",
                    generation_id=str(generation_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                metrics.record_error(type(e).__name__, "generation_commit")

        return GenerationOutcome(
            generation_id=generation_id,
            document=result.document,
            credits_remaining=error.balance,
            conversation_id=conversation_id,
            billed=False,
            message=result.commentary,
            suggestions=suggestions,
        )

    async def _record_failure(
        self,
        user_id: str,
        request: GenerationRequest,
        generation_id: UUID,
        error: GenerationError,
        elapsed_ms: int,
        conversation_id: UUID | None,
    ) -> None:
        """Best-effort audit row for a failed generation; the caller re-raises."""
        async with self.session_factory() as session:
            session.add(
                GenerationRecord(
                    id=generation_id,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    prompt=request.prompt,
                    workflow_document=None,
                    success=False,
                    credits_used=0,
                    generation_time_ms=elapsed_ms,
                    error_kind=error.kind,
                )
            )
            try:
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "generation_failure_record_failed",
                    generation_id=str(generation_id),
                    error=str(e),
                )

    @staticmethod
    def _assistant_metadata(generation_id: UUID, result: GenerationResult) -> dict[str, Any]:
        return {
            "generation_id": str(generation_id),
            "model": result.model,
            "latency_ms": result.latency_ms,
            "workflow": result.document.content,
        }
