"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
JSON columns hold only externally-shaped documents (workflows, node configs).
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Uuid as SAUuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.models.api import HistoryKind


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime stored as UTC on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        # SQLite hands back naive values
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Entitlement(Base):
    """
    ORM model for entitlements table.

    One row per user: plan, balance and trial/subscription state.
    """

    __tablename__ = "entitlements"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Plan & balance
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default="trial")
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trial_ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Subscription state (mirrors the payment provider)
    subscription_status: Mapped[str] = mapped_column(String(30), nullable=False, default="none")
    payment_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_entitlement_credits_non_negative"),
        CheckConstraint(
            "plan IN ('trial', 'starter', 'pro', 'payg')", name="ck_entitlement_plan"
        ),
        Index("idx_entitlements_customer_ref", "payment_customer_ref"),
        Index("idx_entitlements_subscription_ref", "subscription_ref"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Entitlement(user_id={self.user_id}, plan={self.plan}, credits={self.credits})>"


class CreditHistoryEntry(Base):
    """
    ORM model for credit_history table.

    Append-only ledger of every balance change.
    """

    __tablename__ = "credit_history"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("entitlements.user_id"), nullable=False, index=True
    )

    kind: Mapped[HistoryKind] = mapped_column(
        SQLEnum(
            HistoryKind,
            name="history_kind",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Signed delta and balance snapshots
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credits_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credits_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String, nullable=False)

    # References
    related_generation_id: Mapped[UUID | None] = mapped_column(SAUuid, nullable=True)
    related_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Purchase expiry tracking
    expirable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "credits_after = credits_before + amount",
            name="ck_history_balance_consistency",
        ),
        CheckConstraint("credits_after >= 0", name="ck_history_credits_after_non_negative"),
        Index("idx_credit_history_created_at", "created_at"),
        Index("idx_credit_history_kind", "kind"),
        Index("idx_credit_history_related_event", "related_event_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditHistoryEntry(id={self.id}, user_id={self.user_id}, "
            f"kind={self.kind}, amount={self.amount})>"
        )


class ProcessedEvent(Base):
    """
    ORM model for processed_events table.

    Idempotency record: one row per distinct payment event id.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedEvent(event_id={self.event_id}, outcome={self.outcome})>"


class Conversation(Base):
    """ORM model for conversations table."""

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New Conversation")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Conversation(id={self.id}, user_id={self.user_id})>"


class Message(Base):
    """ORM model for conversation_messages table."""

    __tablename__ = "conversation_messages"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        SAUuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Database column is "metadata"; the attribute name avoids the Declarative reserved name
    message_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name="ck_message_role"),
    )


class GenerationRecord(Base):
    """
    ORM model for generation_records table.

    Immutable audit row per completed generation run (success or failure).
    """

    __tablename__ = "generation_records"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    conversation_id: Mapped[UUID | None] = mapped_column(
        SAUuid, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    workflow_document: Mapped[dict[str, Any] | list[Any] | None] = mapped_column(
        JSON, nullable=True
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generation_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_generation_credits_used_non_negative"),
        Index("idx_generation_records_created_at", "created_at"),
    )


# ============================================================================
# Read-only catalog
# ============================================================================


class NodePattern(Base):
    """ORM model for node_patterns table (exemplar node configurations)."""

    __tablename__ = "node_patterns"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    node_type: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    node_name: Mapped[str] = mapped_column(String(255), nullable=False)
    node_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    use_case: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class WorkflowTip(Base):
    """ORM model for workflow_tips table."""

    __tablename__ = "workflow_tips"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    hints: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class WorkflowTemplate(Base):
    """ORM model for workflow_templates table."""

    __tablename__ = "workflow_templates"

    id: Mapped[UUID] = mapped_column(SAUuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    workflow_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    use_cases: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    hints: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
