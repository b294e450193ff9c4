"""
Tests for ContextBuilder, hint derivation and the catalog repositories.
"""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.db.models import NodePattern, WorkflowTemplate, WorkflowTip
from app.exceptions import PersistenceError
from app.models.api import Attachment
from app.services.catalog import SqlCatalogRepository
from app.services.context_builder import (
    BASELINE_HINTS,
    ContextBuilder,
    derive_hints,
    render_user_prompt,
)


class TestDeriveHints:
    """Tests for keyword -> hint mapping."""

    def test_keywords_in_table_order_then_baseline(self):
        hints = derive_hints("Every morning read my database and post to Telegram")

        assert hints == (
            "n8n-nodes-base.telegram",
            "n8n-nodes-base.postgres",
            *BASELINE_HINTS,
        )

    def test_baseline_always_present(self):
        assert derive_hints("do something") == BASELINE_HINTS

    def test_word_boundaries(self):
        """'email' must not trigger the 'ai' keyword, nor 'chatbot' the 'chat' keyword."""
        hints = derive_hints("Forward each email to my chatbot")

        assert "n8n-nodes-base.gmail" in hints
        assert "@n8n/n8n-nodes-langchain.lmChatOpenAi" not in hints
        assert "@n8n/n8n-nodes-langchain.chatTrigger" not in hints

    def test_duplicates_collapse_in_first_seen_order(self):
        hints = derive_hints("Call an HTTP API from a chat with AI")

        assert hints.count("n8n-nodes-base.httpRequest") == 1
        assert hints.count("@n8n/n8n-nodes-langchain.agent") == 1
        assert hints.index("@n8n/n8n-nodes-langchain.chatTrigger") < hints.index(
            "@n8n/n8n-nodes-langchain.lmChatOpenAi"
        )

    def test_multi_word_keyword(self):
        assert "n8n-nodes-base.googleSheets" in derive_hints("append rows to Google Sheets")


class TestContextBuilder:
    """Tests for context assembly from the catalog."""

    @pytest.mark.asyncio
    async def test_selects_matching_material(self, context_builder):
        context = await context_builder.build("Send Telegram alerts")

        assert [p.node_type for p in context.patterns] == [
            "n8n-nodes-base.telegram",
            "n8n-nodes-base.set",
        ]
        assert [t.title for t in context.tips] == ["Name every node", "Batch Telegram sends"]
        assert [t.name for t in context.templates] == ["Telegram digest"]
        assert "Available Node Patterns" in context.system_context
        assert "Batch Telegram sends: Use SplitInBatches" in context.system_context
        assert context.user_prompt.startswith(
            "Generate a complete n8n workflow for: Send Telegram alerts"
        )

    @pytest.mark.asyncio
    async def test_unrelated_prompt_gets_generic_material(self, context_builder):
        context = await context_builder.build("Rename a field")

        assert [p.node_type for p in context.patterns] == ["n8n-nodes-base.set"]
        assert [t.title for t in context.tips] == ["Name every node"]
        assert context.templates == ()
        assert "Template Examples" not in context.system_context

    @pytest.mark.asyncio
    async def test_respects_limits(self, catalog):
        builder = ContextBuilder(catalog, max_patterns=1, max_tips=1, max_templates=0)

        context = await builder.build("telegram and database")

        assert len(context.patterns) == 1
        assert context.patterns[0].node_type == "n8n-nodes-base.telegram"
        assert len(context.tips) == 1
        assert context.templates == ()

    @pytest.mark.asyncio
    async def test_catalog_failure_propagates(self):
        catalog = MagicMock()
        catalog.find_patterns = AsyncMock(side_effect=PersistenceError("catalog down"))

        with pytest.raises(PersistenceError):
            await ContextBuilder(catalog).build("anything")


class TestRenderUserPrompt:
    """Tests for attachment rendering."""

    def test_text_attachment_is_inlined(self):
        data = base64.b64encode(b"id,name\n1,Ada").decode("ascii")
        attachment = Attachment(name="users.csv", mime_type="text/csv", data=data)

        prompt = render_user_prompt("Import users", [attachment])

        assert "Attached file: users.csv (text/csv)" in prompt
        assert "1,Ada" in prompt

    def test_binary_attachment_is_referenced_only(self):
        attachment = Attachment(name="logo.png", mime_type="image/png", data="iVBORw0KGgo=")

        prompt = render_user_prompt("Post the logo", [attachment])

        assert "Attached file: logo.png (image/png)" in prompt
        assert "iVBOR" not in prompt

    def test_undecodable_text_attachment(self):
        attachment = Attachment(name="notes.txt", mime_type="text/plain", data="%%%not-base64")

        prompt = render_user_prompt("Summarize", [attachment])

        assert prompt.endswith("Attached file: notes.txt (text/plain)")


class TestSqlCatalogRepository:
    """Tests for the database-backed catalog."""

    @pytest.mark.asyncio
    async def test_reads_active_rows(self, session_factory):
        async with session_factory() as session:
            session.add_all(
                [
                    NodePattern(
                        node_type="n8n-nodes-base.telegram",
                        node_name="Telegram",
                        node_config={"operation": "sendMessage"},
                    ),
                    NodePattern(
                        node_type="n8n-nodes-base.telegram",
                        node_name="Old Telegram",
                        node_config={},
                        is_featured=False,
                    ),
                    NodePattern(
                        node_type="n8n-nodes-base.slack", node_name="Slack", node_config={}
                    ),
                    WorkflowTip(title="Active", content="a", hints=["n8n-nodes-base.telegram"]),
                    WorkflowTip(title="Retired", content="r", hints=[], is_active=False),
                    WorkflowTemplate(
                        name="Public", workflow_json={"nodes": []}, use_cases=["x"], hints=[]
                    ),
                    WorkflowTemplate(
                        name="Private", workflow_json={"nodes": []}, is_public=False
                    ),
                ]
            )
            await session.commit()

        repository = SqlCatalogRepository(session_factory)

        patterns = await repository.find_patterns(["n8n-nodes-base.telegram"])
        tips = await repository.find_tips()
        templates = await repository.find_templates()

        assert [p.node_name for p in patterns] == ["Telegram"]
        assert [(t.title, t.hints) for t in tips] == [("Active", ("n8n-nodes-base.telegram",))]
        assert [(t.name, t.use_cases) for t in templates] == [("Public", ("x",))]
        assert await repository.find_patterns([]) == []

    @pytest.mark.asyncio
    async def test_store_failure_raises_persistence_error(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=session)
        factory.return_value.__aexit__ = AsyncMock(return_value=False)

        with pytest.raises(PersistenceError):
            await SqlCatalogRepository(factory).find_tips()
