"""
API Routes - Workflow generation, entitlement and conversation endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    Principal,
    get_conversation_store,
    get_generation_log,
    get_ledger,
    get_orchestrator,
    get_principal,
)
from app.db.session import get_db
from app.exceptions import ConversationNotFoundError
from app.models.api import (
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    CreateMessageRequest,
    CreditHistoryItem,
    CreditHistoryResponse,
    EntitlementResponse,
    GenerationListResponse,
    GenerationRecordItem,
    GenerationRequest,
    GenerationResponse,
    HealthResponse,
    MessageListResponse,
    MessageResponse,
)
from app.models.domain import ConversationData, GenerationOutcome, MessageData
from app.services.conversation_store import ConversationStore
from app.services.credit_ledger import CreditLedger
from app.services.generation_log import GenerationLog
from app.services.orchestrator import GenerationOrchestrator

router = APIRouter()


def _generation_response(outcome: GenerationOutcome) -> GenerationResponse:
    return GenerationResponse(
        generation_id=outcome.generation_id,
        document=outcome.document.content,
        message=outcome.message,
        suggestions=list(outcome.suggestions),
        conversation_id=outcome.conversation_id,
        credits_remaining=outcome.credits_remaining,
        billed=outcome.billed,
    )


def _conversation_response(conversation: ConversationData) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.conversation_id,
        title=conversation.title,
        message_count=conversation.message_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _message_response(message: MessageData) -> MessageResponse:
    return MessageResponse(
        id=message.message_id,
        conversation_id=message.conversation_id,
        role=message.role,
        content=message.content,
        intent=message.intent,
        confidence=message.confidence,
        metadata=message.metadata,
        created_at=message.created_at,
    )


def _conversation_not_found(exc: ConversationNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Conversation not found: {exc.conversation_id}",
    )


# =============================================================================
# Workflow Generation
# =============================================================================


@router.post("/v1/workflows/generate", response_model=GenerationResponse)
async def generate_workflow(
    request: GenerationRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """
    Generate a workflow document from a prompt.

    One generation costs one credit, charged only after a document was
    produced. Entitlement refusals return 402, generation failures 502/504.

    Auth: Bearer {jwt}
    """
    try:
        outcome = await orchestrator.process(principal.user_id, request)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(exc) from exc
    return _generation_response(outcome)


@router.post("/v1/workflows/fast-generate", response_model=GenerationResponse)
async def fast_generate_workflow(
    request: GenerationRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """
    Generate a workflow with the shorter fast-path timeout.

    Auth: Bearer {jwt}
    """
    try:
        outcome = await orchestrator.process(principal.user_id, request, fast=True)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(exc) from exc
    return _generation_response(outcome)


@router.get("/v1/workflows", response_model=GenerationListResponse)
async def list_workflows(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    successful_only: bool = Query(False),
    principal: Principal = Depends(get_principal),
    generation_log: GenerationLog = Depends(get_generation_log),
) -> GenerationListResponse:
    """Generation runs of the caller, newest first."""
    records, total = await generation_log.list_for_user(
        principal.user_id, limit=limit, offset=offset, successful_only=successful_only
    )
    return GenerationListResponse(
        generations=[
            GenerationRecordItem(
                id=record.generation_id,
                conversation_id=record.conversation_id,
                prompt=record.prompt,
                document=record.workflow_document,
                success=record.success,
                credits_used=record.credits_used,
                generation_time_ms=record.generation_time_ms,
                error_kind=record.error_kind,
                created_at=record.created_at,
            )
            for record in records
        ],
        total_count=total,
        has_more=(offset + len(records)) < total,
    )


# =============================================================================
# Entitlement & Credit History
# =============================================================================


@router.get("/v1/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    principal: Principal = Depends(get_principal),
    ledger: CreditLedger = Depends(get_ledger),
) -> EntitlementResponse:
    """
    Current plan, trial and credit status.

    Provisions a trial entitlement on first contact.
    """
    await ledger.provision(principal.user_id)
    report = await ledger.check_entitlement(principal.user_id)
    return EntitlementResponse(
        status=report.status,
        plan=report.plan,
        credits_remaining=report.credits,
        days_remaining=report.days_remaining,
        days_used=report.days_used,
        trial_ends_at=report.trial_ends_at,
        subscription_status=report.subscription_status,
        can_use_service=report.permits_spend,
        upgrade_required=report.upgrade_required,
        message=report.message,
    )


@router.get("/v1/credits/history", response_model=CreditHistoryResponse)
async def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditHistoryResponse:
    """Credit history for the caller, newest first."""
    entries, total = await ledger.list_history(principal.user_id, limit=limit, offset=offset)
    return CreditHistoryResponse(
        entries=[
            CreditHistoryItem(
                id=entry.entry_id,
                kind=entry.kind,
                amount=entry.amount,
                credits_before=entry.credits_before,
                credits_after=entry.credits_after,
                description=entry.description,
                related_generation_id=entry.related_generation_id,
                related_event_id=entry.related_event_id,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total_count=total,
        has_more=(offset + len(entries)) < total,
    )


# =============================================================================
# Conversations
# =============================================================================


@router.get("/v1/conversations", response_model=ConversationListResponse)
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationListResponse:
    """Caller's conversations, most recently updated first."""
    conversations = await store.list_for_user(principal.user_id, limit=limit)
    return ConversationListResponse(
        conversations=[_conversation_response(c) for c in conversations]
    )


@router.post(
    "/v1/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    request: CreateConversationRequest,
    principal: Principal = Depends(get_principal),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    """Start an empty conversation."""
    conversation = await store.create(principal.user_id, title=request.title)
    return _conversation_response(conversation)


@router.delete("/v1/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: UUID,
    principal: Principal = Depends(get_principal),
    store: ConversationStore = Depends(get_conversation_store),
) -> None:
    """Delete a conversation and its messages."""
    try:
        await store.delete(conversation_id, principal.user_id)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(exc) from exc


@router.get(
    "/v1/conversations/{conversation_id}/messages", response_model=MessageListResponse
)
async def list_messages(
    conversation_id: UUID,
    principal: Principal = Depends(get_principal),
    store: ConversationStore = Depends(get_conversation_store),
) -> MessageListResponse:
    """Messages of one conversation in chronological order."""
    try:
        messages = await store.list_messages(conversation_id, principal.user_id)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(exc) from exc
    return MessageListResponse(messages=[_message_response(m) for m in messages])


@router.post(
    "/v1/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_message(
    conversation_id: UUID,
    request: CreateMessageRequest,
    principal: Principal = Depends(get_principal),
    store: ConversationStore = Depends(get_conversation_store),
) -> MessageResponse:
    """Append a message to one of the caller's conversations."""
    try:
        await store.get(conversation_id, principal.user_id)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(exc) from exc
    message = await store.add_message(
        conversation_id,
        request.role,
        request.content,
        intent=request.intent,
        confidence=request.confidence,
        metadata=request.metadata,
    )
    return _message_response(message)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
