"""
Catalog Repository - Read-only node patterns, tips and template skeletons.

NO DICTIONARIES - Rows are converted to frozen domain models at the boundary.
"""

from collections.abc import Sequence
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import NodePattern, WorkflowTemplate, WorkflowTip
from app.exceptions import PersistenceError
from app.models.domain import ExemplarPattern, TemplateSkeleton, Tip
from app.observability.logging import get_logger

logger = get_logger(__name__)


class CatalogRepository(Protocol):
    """Read-only catalog lookups used to assemble generation context."""

    async def find_patterns(self, hints: Sequence[str]) -> list[ExemplarPattern]:
        """Featured patterns whose node type is one of ``hints``."""
        ...

    async def find_tips(self) -> list[Tip]:
        """Active workflow tips."""
        ...

    async def find_templates(self) -> list[TemplateSkeleton]:
        """Active, public template skeletons."""
        ...


class SqlCatalogRepository:
    """Catalog backed by the node_patterns, workflow_tips and workflow_templates tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def find_patterns(self, hints: Sequence[str]) -> list[ExemplarPattern]:
        if not hints:
            return []
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(NodePattern)
                    .where(
                        NodePattern.node_type.in_(list(hints)),
                        NodePattern.is_featured.is_(True),
                    )
                    .order_by(NodePattern.node_type, NodePattern.node_name)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("catalog_unavailable", lookup="patterns", error=str(e))
            raise PersistenceError(f"Catalog unavailable: {e}") from e

        return [
            ExemplarPattern(
                node_type=row.node_type,
                node_name=row.node_name,
                node_config=row.node_config,
                use_case=row.use_case,
            )
            for row in rows
        ]

    async def find_tips(self) -> list[Tip]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkflowTip)
                    .where(WorkflowTip.is_active.is_(True))
                    .order_by(WorkflowTip.title)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("catalog_unavailable", lookup="tips", error=str(e))
            raise PersistenceError(f"Catalog unavailable: {e}") from e

        return [
            Tip(
                title=row.title,
                content=row.content,
                category=row.category,
                hints=tuple(row.hints or ()),
            )
            for row in rows
        ]

    async def find_templates(self) -> list[TemplateSkeleton]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkflowTemplate)
                    .where(
                        WorkflowTemplate.is_active.is_(True),
                        WorkflowTemplate.is_public.is_(True),
                    )
                    .order_by(WorkflowTemplate.name)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("catalog_unavailable", lookup="templates", error=str(e))
            raise PersistenceError(f"Catalog unavailable: {e}") from e

        return [
            TemplateSkeleton(
                name=row.name,
                workflow_json=row.workflow_json,
                use_cases=tuple(row.use_cases or ()),
                hints=tuple(row.hints or ()),
            )
            for row in rows
        ]


class InMemoryCatalog:
    """Fixed catalog snapshot held in memory."""

    def __init__(
        self,
        patterns: Sequence[ExemplarPattern] = (),
        tips: Sequence[Tip] = (),
        templates: Sequence[TemplateSkeleton] = (),
    ) -> None:
        self.patterns = tuple(patterns)
        self.tips = tuple(tips)
        self.templates = tuple(templates)

    async def find_patterns(self, hints: Sequence[str]) -> list[ExemplarPattern]:
        wanted = set(hints)
        return [p for p in self.patterns if p.node_type in wanted]

    async def find_tips(self) -> list[Tip]:
        return list(self.tips)

    async def find_templates(self) -> list[TemplateSkeleton]:
        return list(self.templates)
