"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from app.models.api import (
    BillingEventKind,
    EntitlementStatus,
    HistoryKind,
    MessageRole,
    Plan,
)


@dataclass(frozen=True)
class EntitlementData:
    """Immutable entitlement snapshot."""

    user_id: str
    plan: Plan
    credits: int
    trial_ends_at: datetime
    subscription_status: str
    payment_customer_ref: str | None
    subscription_ref: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate entitlement constraints."""
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class EntitlementReport:
    """Result of an advisory entitlement check."""

    user_id: str
    status: EntitlementStatus
    plan: Plan
    credits: int
    days_remaining: int
    days_used: int
    trial_ends_at: datetime
    subscription_status: str
    message: str

    @property
    def permits_spend(self) -> bool:
        return self.status.permits_spend

    @property
    def upgrade_required(self) -> bool:
        return not self.status.permits_spend


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable credit history entry after persistence."""

    entry_id: UUID
    user_id: str
    kind: HistoryKind
    amount: int
    credits_before: int
    credits_after: int
    description: str
    related_generation_id: UUID | None
    related_event_id: str | None
    created_at: datetime

    def __post_init__(self) -> None:
        """Validate the history consistency invariant."""
        if self.credits_after != self.credits_before + self.amount:
            raise ValueError(
                f"Inconsistent entry: {self.credits_before} + {self.amount} != {self.credits_after}"
            )


@dataclass(frozen=True)
class ExpirationSummary:
    """Totals from one run of the purchased-credit expiry batch."""

    processed_purchases: int
    expired_credits: int
    affected_users: int


# ============================================================================
# Catalog & Generation Models
# ============================================================================


@dataclass(frozen=True)
class ExemplarPattern:
    """Featured node configuration from the catalog."""

    node_type: str
    node_name: str
    node_config: dict[str, Any]
    use_case: str | None = None


@dataclass(frozen=True)
class Tip:
    """Workflow-building tip from the catalog."""

    title: str
    content: str
    category: str | None
    hints: tuple[str, ...]


@dataclass(frozen=True)
class TemplateSkeleton:
    """Public workflow template from the catalog."""

    name: str
    workflow_json: dict[str, Any]
    use_cases: tuple[str, ...]
    hints: tuple[str, ...]


@dataclass(frozen=True)
class GenerationContext:
    """Bounded bundle of catalog material assembled for one generation call."""

    user_prompt: str
    hints: tuple[str, ...]
    patterns: tuple[ExemplarPattern, ...]
    tips: tuple[Tip, ...]
    templates: tuple[TemplateSkeleton, ...]
    system_context: str


@dataclass(frozen=True)
class WorkflowDocument:
    """Canonical structured workflow document produced by generation."""

    content: dict[str, Any] | list[Any]

    def __post_init__(self) -> None:
        if not isinstance(self.content, (dict, list)):
            raise ValueError(f"Workflow document must be an object or array: {type(self.content)}")

    def to_json(self) -> str:
        """Serialize the document (round-trips through the output parser)."""
        return json.dumps(self.content, ensure_ascii=False)


@dataclass(frozen=True)
class GenerationResult:
    """Successful output of the generation client."""

    document: WorkflowDocument
    commentary: str | None
    model: str
    latency_ms: int


@dataclass(frozen=True)
class GenerationOutcome:
    """End-to-end result of one orchestrator run."""

    generation_id: UUID
    document: WorkflowDocument
    credits_remaining: int
    conversation_id: UUID | None
    billed: bool
    message: str | None
    suggestions: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GenerationRecordData:
    """Immutable audit row of one generation run."""

    generation_id: UUID
    user_id: str
    conversation_id: UUID | None
    prompt: str
    workflow_document: dict[str, Any] | list[Any] | None
    success: bool
    credits_used: int
    generation_time_ms: int
    error_kind: str | None
    created_at: datetime


# ============================================================================
# Conversation Models
# ============================================================================


@dataclass(frozen=True)
class ConversationData:
    """Immutable conversation snapshot."""

    conversation_id: UUID
    user_id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageData:
    """Immutable conversation message snapshot."""

    message_id: UUID
    conversation_id: UUID
    role: MessageRole
    content: str
    intent: str | None
    confidence: float | None
    metadata: dict[str, Any]
    created_at: datetime


# ============================================================================
# Payment Event Models
# ============================================================================


@dataclass(frozen=True)
class BillingEvent:
    """
    Provider-agnostic, verified payment event.

    Fields not carried by a given event kind are None.
    """

    event_id: str
    kind: BillingEventKind
    provider_type: str
    user_id: str | None = None
    plan: str | None = None
    mode: str | None = None
    credits: int | None = None
    customer_ref: str | None = None
    subscription_ref: str | None = None
    subscription_status: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    billing_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.event_id:
            raise ValueError("event_id cannot be empty")


@dataclass(frozen=True)
class CheckoutIntent:
    """Hosted checkout to open for a user buying a plan or a credit pack."""

    user_id: str
    plan: Plan
    price_ref: str
    success_url: str
    cancel_url: str
    customer_ref: str | None = None
    credits: int | None = None

    @property
    def mode(self) -> str:
        """Stripe checkout mode: recurring plans subscribe, packs pay once."""
        return "subscription" if self.plan.is_subscription else "payment"

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.price_ref:
            raise ValueError("price_ref cannot be empty")


@dataclass(frozen=True)
class CheckoutSession:
    """Checkout session created by the payment provider."""

    session_id: str
    url: str | None
