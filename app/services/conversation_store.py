"""
Conversation Store - Repository for conversations and their messages.

NO DICTIONARIES - Returns immutable domain models. No business logic.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db.models import Conversation, Message
from app.exceptions import ConversationNotFoundError
from app.models.api import MessageRole
from app.models.domain import ConversationData, MessageData

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 60


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def title_from_prompt(prompt: str) -> str:
    """Conversation title derived from its first prompt."""
    text = " ".join(prompt.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) <= TITLE_MAX_LENGTH:
        return text
    return text[: TITLE_MAX_LENGTH - 3].rstrip() + "..."


class ConversationStore:
    """Persists conversations and messages for a user."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session."""
        self.session = session

    async def create(
        self,
        user_id: str,
        title: str | None = None,
        conversation_id: UUID | None = None,
        commit: bool = True,
    ) -> ConversationData:
        """Create a conversation."""
        now = _utc_now()
        conversation = Conversation(
            id=conversation_id or uuid4(),
            user_id=user_id,
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(conversation)
        await self.session.flush()
        if commit:
            await self.session.commit()
        return self._to_domain(conversation, message_count=0)

    async def get(self, conversation_id: UUID, user_id: str) -> ConversationData:
        """
        Get a conversation owned by the user.

        Raises:
            ConversationNotFoundError: Missing or owned by another user
        """
        conversation = await self._find_owned(conversation_id, user_id)
        count = await self.session.scalar(
            select(func.count())
            .select_from(Message)
            .where(Message.conversation_id == conversation_id)
        )
        return self._to_domain(conversation, message_count=count or 0)

    async def ensure(
        self,
        user_id: str,
        conversation_id: UUID | None,
        title: str | None = None,
        commit: bool = True,
    ) -> ConversationData:
        """
        Return the referenced conversation, creating it if absent.

        Raises:
            ConversationNotFoundError: The id belongs to another user
        """
        if conversation_id is not None:
            existing = await self.session.get(Conversation, conversation_id)
            if existing is not None:
                return await self.get(conversation_id, user_id)
        return await self.create(
            user_id, title=title, conversation_id=conversation_id, commit=commit
        )

    async def owner_of(self, conversation_id: UUID) -> str | None:
        """User owning a conversation, None when it does not exist."""
        return await self.session.scalar(
            select(Conversation.user_id).where(Conversation.id == conversation_id)
        )

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ConversationData]:
        """Conversations for a user, most recently updated first."""
        counts = (
            select(Message.conversation_id, func.count(Message.id).label("message_count"))
            .group_by(Message.conversation_id)
            .subquery()
        )
        result = await self.session.execute(
            select(Conversation, func.coalesce(counts.c.message_count, 0))
            .outerjoin(counts, counts.c.conversation_id == Conversation.id)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.updated_at.desc())
            .limit(limit)
        )
        return [self._to_domain(row, message_count=count) for row, count in result.all()]

    async def add_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: str,
        intent: str | None = None,
        confidence: float | None = None,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> MessageData:
        """Append a message and touch the conversation."""
        now = _utc_now()
        message = Message(
            conversation_id=conversation_id,
            role=role.value,
            content=content,
            intent=intent,
            confidence=confidence,
            message_metadata=metadata or {},
            created_at=now,
        )
        self.session.add(message)
        await self.session.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(updated_at=now)
        )
        await self.session.flush()
        if commit:
            await self.session.commit()
        return self._message_to_domain(message)

    async def list_messages(self, conversation_id: UUID, user_id: str) -> list[MessageData]:
        """
        Messages of a conversation in chronological order.

        Raises:
            ConversationNotFoundError: Missing or owned by another user
        """
        await self._find_owned(conversation_id, user_id)
        result = await self.session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at)
        )
        return [self._message_to_domain(row) for row in result.scalars().all()]

    async def delete(self, conversation_id: UUID, user_id: str) -> None:
        """
        Delete a conversation and its messages.

        Raises:
            ConversationNotFoundError: Missing or owned by another user
        """
        result = await self.session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(selectinload(Conversation.messages))
        )
        conversation = result.scalar_one_or_none()
        if conversation is None or conversation.user_id != user_id:
            raise ConversationNotFoundError(conversation_id)
        await self.session.delete(conversation)
        await self.session.commit()

    async def _find_owned(self, conversation_id: UUID, user_id: str) -> Conversation:
        conversation = await self.session.get(Conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    @staticmethod
    def _to_domain(conversation: Conversation, message_count: int) -> ConversationData:
        """Convert ORM model to domain model."""
        return ConversationData(
            conversation_id=conversation.id,
            user_id=conversation.user_id,
            title=conversation.title,
            message_count=message_count,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )

    @staticmethod
    def _message_to_domain(message: Message) -> MessageData:
        """Convert ORM model to domain model."""
        return MessageData(
            message_id=message.id,
            conversation_id=message.conversation_id,
            role=MessageRole(message.role),
            content=message.content,
            intent=message.intent,
            confidence=message.confidence,
            metadata=dict(message.message_metadata or {}),
            created_at=message.created_at,
        )
