"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class Plan(str, Enum):
    """Entitlement plan enumeration."""

    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    PAYG = "payg"

    @property
    def is_subscription(self) -> bool:
        """Plans billed monthly through the payment provider."""
        return self in (Plan.STARTER, Plan.PRO)


class EntitlementStatus(str, Enum):
    """Entitlement status enumeration."""

    ACTIVE = "active"
    GRACE = "grace"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"

    @property
    def permits_spend(self) -> bool:
        """Whether a generation may be attempted in this state."""
        return self in (EntitlementStatus.ACTIVE, EntitlementStatus.GRACE)


class HistoryKind(str, Enum):
    """Credit history entry kind enumeration."""

    USAGE = "usage"
    PURCHASE = "purchase"
    REFUND = "refund"
    EXPIRATION = "expiration"
    ADJUSTMENT = "adjustment"


class MessageRole(str, Enum):
    """Conversation message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"


class BillingEventKind(str, Enum):
    """Provider-agnostic payment event kinds."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    TRIAL_WILL_END = "trial_will_end"
    UNKNOWN = "unknown"


class ReconciliationOutcome(str, Enum):
    """Result of handling one payment event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DROPPED = "dropped"


class EntitlementErrorKind(str, Enum):
    """User-facing reason a generation was refused."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    TRIAL_EXPIRED = "trial_expired"


# ============================================================================
# Generation Models
# ============================================================================


class Attachment(BaseModel):
    """File attached to a generation request (base64 data)."""

    name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)
    data: str = Field(..., max_length=2_000_000)


class GenerationRequest(BaseModel):
    """POST /v1/workflows/generate request body."""

    prompt: str = Field(..., min_length=1, max_length=4000)
    conversation_id: UUID | None = None
    attachments: list[Attachment] = Field(default_factory=list, max_length=5)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v.strip()


class GenerationResponse(BaseModel):
    """Successful generation response."""

    success: Literal[True] = True
    generation_id: UUID
    document: dict[str, Any] | list[Any]
    message: str | None = None
    suggestions: list[str] = Field(default_factory=list)
    conversation_id: UUID | None = None
    credits_remaining: int
    billed: bool = True


class EntitlementErrorResponse(BaseModel):
    """402 response when the entitlement does not permit a generation."""

    success: Literal[False] = False
    error_kind: EntitlementErrorKind
    upgrade_required: bool = True
    message: str


class GenerationErrorResponse(BaseModel):
    """502/504 response when the generative capability fails."""

    success: Literal[False] = False
    error_kind: str
    retryable: bool = True
    message: str


class GenerationRecordItem(BaseModel):
    """Single generation run."""

    id: UUID
    conversation_id: UUID | None = None
    prompt: str
    document: dict[str, Any] | list[Any] | None = None
    success: bool
    credits_used: int
    generation_time_ms: int
    error_kind: str | None = None
    created_at: datetime


class GenerationListResponse(BaseModel):
    """GET /v1/workflows response."""

    generations: list[GenerationRecordItem]
    total_count: int
    has_more: bool


# ============================================================================
# Entitlement & Credit History Models
# ============================================================================


class EntitlementResponse(BaseModel):
    """GET /v1/entitlement response."""

    status: EntitlementStatus
    plan: Plan
    credits_remaining: int
    days_remaining: int
    days_used: int
    trial_ends_at: datetime
    subscription_status: str
    can_use_service: bool
    upgrade_required: bool
    message: str


class CreditHistoryItem(BaseModel):
    """Single credit history entry."""

    id: UUID
    kind: HistoryKind
    amount: int
    credits_before: int
    credits_after: int
    description: str
    related_generation_id: UUID | None = None
    related_event_id: str | None = None
    created_at: datetime


class CreditHistoryResponse(BaseModel):
    """GET /v1/credits/history response."""

    entries: list[CreditHistoryItem]
    total_count: int
    has_more: bool


# ============================================================================
# Conversation Models
# ============================================================================


class CreateConversationRequest(BaseModel):
    """POST /v1/conversations request body."""

    title: str | None = Field(None, max_length=255)


class ConversationResponse(BaseModel):
    """Single conversation."""

    id: UUID
    title: str
    message_count: int = 0
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    """GET /v1/conversations response."""

    conversations: list[ConversationResponse]


class CreateMessageRequest(BaseModel):
    """POST /v1/conversations/{id}/messages request body."""

    role: MessageRole
    content: str = Field(..., min_length=1)
    intent: str | None = Field(None, max_length=100)
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    """Single conversation message."""

    id: UUID
    conversation_id: UUID
    role: MessageRole
    content: str
    intent: str | None = None
    confidence: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MessageListResponse(BaseModel):
    """GET /v1/conversations/{id}/messages response."""

    messages: list[MessageResponse]


# ============================================================================
# Billing Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    outcome: ReconciliationOutcome


class ExpireCreditsResponse(BaseModel):
    """POST /v1/billing/credits/expire response."""

    processed_purchases: int
    expired_credits: int
    affected_users: int


class CheckoutRequest(BaseModel):
    """POST /v1/billing/checkout request body."""

    plan: Plan
    success_url: str = Field(..., min_length=1, max_length=2000)
    cancel_url: str = Field(..., min_length=1, max_length=2000)


class CheckoutResponse(BaseModel):
    """POST /v1/billing/checkout response."""

    session_id: str
    url: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
