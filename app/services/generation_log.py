"""
Generation Log - Read access to the per-run generation audit rows.

NO DICTIONARIES - Returns immutable domain models. Rows are written by the
orchestrator and never mutated.
"""

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GenerationRecord
from app.exceptions import PersistenceError
from app.models.domain import GenerationRecordData


class GenerationLog:
    """Lists a user's generation runs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_user(
        self, user_id: str, limit: int = 50, offset: int = 0, successful_only: bool = False
    ) -> tuple[list[GenerationRecordData], int]:
        """Generation runs for a user, newest first, with the total count."""
        conditions = [GenerationRecord.user_id == user_id]
        if successful_only:
            conditions.append(GenerationRecord.success.is_(True))

        try:
            total = await self.session.scalar(
                select(func.count()).select_from(GenerationRecord).where(*conditions)
            )
            result = await self.session.execute(
                select(GenerationRecord)
                .where(*conditions)
                .order_by(GenerationRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"list_generations failed: {e}") from e

        return [self._to_domain(row) for row in result.scalars().all()], total or 0

    @staticmethod
    def _to_domain(row: GenerationRecord) -> GenerationRecordData:
        return GenerationRecordData(
            generation_id=row.id,
            user_id=row.user_id,
            conversation_id=row.conversation_id,
            prompt=row.prompt,
            workflow_document=row.workflow_document,
            success=row.success,
            credits_used=row.credits_used,
            generation_time_ms=row.generation_time_ms,
            error_kind=row.error_kind,
            created_at=row.created_at,
        )
