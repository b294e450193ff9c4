"""
Tests for GenerationOrchestrator.

Uses a real SQLite ledger and conversation store with a stubbed generation
boundary, so billing atomicity is checked against actual rows.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.db.models import GenerationRecord
from app.exceptions import (
    ConversationNotFoundError,
    EntitlementError,
    GenerationTimeoutError,
    UpstreamGenerationError,
    ValidationError,
)
from app.models.api import EntitlementErrorKind, GenerationRequest, HistoryKind, MessageRole
from app.services.conversation_store import ConversationStore
from app.services.credit_ledger import CreditLedger
from app.services.orchestrator import GenerationOrchestrator


@pytest.fixture
def orchestrator(session_factory, context_builder, generation_client, test_settings):
    return GenerationOrchestrator(
        session_factory, context_builder, generation_client, test_settings
    )


async def _records(session_factory) -> list[GenerationRecord]:
    async with session_factory() as session:
        result = await session.execute(select(GenerationRecord))
        return list(result.scalars().all())


async def _credits(session_factory, test_settings, user_id: str = "user-1") -> int:
    async with session_factory() as session:
        return (await CreditLedger(session, test_settings).get_entitlement(user_id)).credits


class DrainingClient:
    """Generation boundary that lets a concurrent request spend the balance first."""

    def __init__(self, inner, session_factory, config) -> None:
        self.inner = inner
        self.session_factory = session_factory
        self.config = config

    async def generate(self, context, fast=False):
        async with self.session_factory() as session:
            ledger = CreditLedger(session, self.config)
            balance = (await ledger.get_entitlement("user-1")).credits
            await ledger.try_spend("user-1", balance, description="Concurrent request")
        return await self.inner.generate(context, fast=fast)


class TestSuccessfulGeneration:
    """Tests for the billed path."""

    @pytest.mark.asyncio
    async def test_first_request_provisions_and_bills(
        self, orchestrator, generation_client, session_factory, test_settings, sample_workflow
    ):
        outcome = await orchestrator.process(
            "user-1", GenerationRequest(prompt="Send Telegram alerts")
        )

        assert outcome.billed is True
        assert outcome.credits_remaining == 99
        assert outcome.document.content == sample_workflow
        assert outcome.message == "Here is your workflow."
        assert outcome.suggestions == ("Name every node", "Batch Telegram sends")
        assert outcome.conversation_id is not None
        assert generation_client.calls[0][1] is False

        records = await _records(session_factory)
        assert len(records) == 1
        assert records[0].id == outcome.generation_id
        assert records[0].success is True
        assert records[0].credits_used == 1
        assert records[0].conversation_id == outcome.conversation_id

        async with session_factory() as session:
            ledger = CreditLedger(session, test_settings)
            entries, _ = await ledger.list_history("user-1")
            usage = [e for e in entries if e.kind == HistoryKind.USAGE]
            assert len(usage) == 1
            assert usage[0].related_generation_id == outcome.generation_id
            assert await ledger.verify_conservation("user-1")

            store = ConversationStore(session)
            conversation = await store.get(outcome.conversation_id, "user-1")
            messages = await store.list_messages(outcome.conversation_id, "user-1")

        assert conversation.title == "Send Telegram alerts"
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == "Send Telegram alerts"
        assert messages[1].intent == "workflow_generation"
        assert messages[1].metadata["generation_id"] == str(outcome.generation_id)
        assert messages[1].metadata["workflow"] == sample_workflow

    @pytest.mark.asyncio
    async def test_fast_mode_is_passed_through(self, orchestrator, generation_client):
        await orchestrator.process("user-1", GenerationRequest(prompt="ping"), fast=True)
        assert generation_client.calls[0][1] is True

    @pytest.mark.asyncio
    async def test_appends_to_existing_conversation(self, orchestrator, session_factory):
        async with session_factory() as session:
            conversation = await ConversationStore(session).create("user-1", title="Mine")

        outcome = await orchestrator.process(
            "user-1",
            GenerationRequest(
                prompt="Add a schedule", conversation_id=conversation.conversation_id
            ),
        )

        assert outcome.conversation_id == conversation.conversation_id
        async with session_factory() as session:
            refreshed = await ConversationStore(session).get(
                conversation.conversation_id, "user-1"
            )
        assert refreshed.title == "Mine"
        assert refreshed.message_count == 2

    @pytest.mark.asyncio
    async def test_unknown_conversation_id_is_created(self, orchestrator, session_factory):
        conversation_id = uuid4()

        outcome = await orchestrator.process(
            "user-1", GenerationRequest(prompt="Hello", conversation_id=conversation_id)
        )

        assert outcome.conversation_id == conversation_id
        async with session_factory() as session:
            assert await ConversationStore(session).owner_of(conversation_id) == "user-1"

    @pytest.mark.asyncio
    async def test_message_falls_back_to_workflow_name(
        self, session_factory, context_builder, stub_client_class, test_settings
    ):
        orchestrator = GenerationOrchestrator(
            session_factory, context_builder, stub_client_class(commentary=None), test_settings
        )

        outcome = await orchestrator.process("user-1", GenerationRequest(prompt="Hi"))

        assert outcome.message is None
        async with session_factory() as session:
            messages = await ConversationStore(session).list_messages(
                outcome.conversation_id, "user-1"
            )
        assert messages[1].content == "Generated workflow: Sheet to Telegram"


class TestRefusals:
    """Tests for requests refused before generation."""

    @pytest.mark.asyncio
    async def test_expired_trial_never_calls_generation(
        self, orchestrator, generation_client, session_factory, test_settings
    ):
        """25 credits left, trial ended 8 days ago."""
        async with session_factory() as session:
            ledger = CreditLedger(session, test_settings)
            await ledger.provision("user-1", now=datetime.now(UTC) - timedelta(days=15))
            await ledger.try_spend("user-1", 75)

        with pytest.raises(EntitlementError) as exc_info:
            await orchestrator.process("user-1", GenerationRequest(prompt="anything"))

        assert exc_info.value.kind == EntitlementErrorKind.TRIAL_EXPIRED
        assert generation_client.calls == []
        assert await _credits(session_factory, test_settings) == 25
        assert await _records(session_factory) == []

    @pytest.mark.asyncio
    async def test_exhausted_credits(
        self, orchestrator, generation_client, session_factory, test_settings
    ):
        async with session_factory() as session:
            ledger = CreditLedger(session, test_settings)
            await ledger.provision("user-1")
            await ledger.try_spend("user-1", 100)

        with pytest.raises(EntitlementError) as exc_info:
            await orchestrator.process("user-1", GenerationRequest(prompt="anything"))

        assert exc_info.value.kind == EntitlementErrorKind.INSUFFICIENT_CREDITS
        assert generation_client.calls == []

    @pytest.mark.asyncio
    async def test_missing_user(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.process("", GenerationRequest(prompt="anything"))

    @pytest.mark.asyncio
    async def test_foreign_conversation(
        self, orchestrator, generation_client, session_factory, test_settings
    ):
        async with session_factory() as session:
            conversation = await ConversationStore(session).create("user-2")

        with pytest.raises(ConversationNotFoundError):
            await orchestrator.process(
                "user-1",
                GenerationRequest(prompt="steal", conversation_id=conversation.conversation_id),
            )

        assert generation_client.calls == []
        assert await _credits(session_factory, test_settings) == 100


class TestGenerationFailures:
    """Tests for failures of the generative capability."""

    @pytest.mark.asyncio
    async def test_timeout_is_not_billed(
        self, session_factory, context_builder, stub_client_class, test_settings
    ):
        """The capability times out: credits unchanged, only a failure record."""
        orchestrator = GenerationOrchestrator(
            session_factory,
            context_builder,
            stub_client_class(error=GenerationTimeoutError(90.0)),
            test_settings,
        )

        with pytest.raises(GenerationTimeoutError):
            await orchestrator.process("user-1", GenerationRequest(prompt="slow one"))

        assert await _credits(session_factory, test_settings) == 100
        records = await _records(session_factory)
        assert len(records) == 1
        assert records[0].success is False
        assert records[0].credits_used == 0
        assert records[0].error_kind == "timeout"
        assert records[0].workflow_document is None

        async with session_factory() as session:
            entries, total = await CreditLedger(session, test_settings).list_history("user-1")
        assert total == 1
        assert entries[0].kind == HistoryKind.ADJUSTMENT

    @pytest.mark.asyncio
    async def test_failure_record_keeps_existing_conversation(
        self, session_factory, context_builder, stub_client_class, test_settings
    ):
        async with session_factory() as session:
            conversation = await ConversationStore(session).create("user-1")
        orchestrator = GenerationOrchestrator(
            session_factory,
            context_builder,
            stub_client_class(error=UpstreamGenerationError(500, "boom")),
            test_settings,
        )

        with pytest.raises(UpstreamGenerationError):
            await orchestrator.process(
                "user-1",
                GenerationRequest(prompt="x", conversation_id=conversation.conversation_id),
            )

        records = await _records(session_factory)
        assert records[0].conversation_id == conversation.conversation_id
        assert records[0].error_kind == "upstream_error"

    @pytest.mark.asyncio
    async def test_failure_record_drops_unknown_conversation(
        self, session_factory, context_builder, stub_client_class, test_settings
    ):
        orchestrator = GenerationOrchestrator(
            session_factory,
            context_builder,
            stub_client_class(error=UpstreamGenerationError(500, "boom")),
            test_settings,
        )

        with pytest.raises(UpstreamGenerationError):
            await orchestrator.process(
                "user-1", GenerationRequest(prompt="x", conversation_id=uuid4())
            )

        records = await _records(session_factory)
        assert records[0].conversation_id is None


class TestBillingRaces:
    """Tests for the spend losing after a successful generation."""

    @pytest.mark.asyncio
    async def test_lost_spend_race_returns_unbilled_document(
        self, session_factory, context_builder, generation_client, test_settings, sample_workflow
    ):
        orchestrator = GenerationOrchestrator(
            session_factory,
            context_builder,
            DrainingClient(generation_client, session_factory, test_settings),
            test_settings,
        )

        outcome = await orchestrator.process("user-1", GenerationRequest(prompt="race"))

        assert outcome.billed is False
        assert outcome.credits_remaining == 0
        assert outcome.document.content == sample_workflow
        assert outcome.conversation_id is not None

        records = await _records(session_factory)
        assert len(records) == 1
        assert records[0].id == outcome.generation_id
        assert records[0].success is True
        assert records[0].credits_used == 0
        assert records[0].conversation_id == outcome.conversation_id

        async with session_factory() as session:
            messages = await ConversationStore(session).list_messages(
                outcome.conversation_id, "user-1"
            )
            assert sorted(m.role for m in messages) == [MessageRole.ASSISTANT, MessageRole.USER]
            assert await CreditLedger(session, test_settings).verify_conservation("user-1")

    @pytest.mark.asyncio
    async def test_lost_spend_race_rejected_when_configured(
        self, session_factory, context_builder, generation_client, test_settings
    ):
        config = test_settings.model_copy(update={"return_unbilled_on_spend_race": False})
        orchestrator = GenerationOrchestrator(
            session_factory,
            context_builder,
            DrainingClient(generation_client, session_factory, config),
            config,
        )

        with pytest.raises(EntitlementError) as exc_info:
            await orchestrator.process("user-1", GenerationRequest(prompt="race"))

        assert exc_info.value.kind == EntitlementErrorKind.INSUFFICIENT_CREDITS

    @pytest.mark.asyncio
    async def test_persistence_failure_rolls_back_spend(
        self, orchestrator, session_factory, test_settings, monkeypatch
    ):
        async def failing_ensure(self, *args, **kwargs):
            raise OperationalError("INSERT INTO conversations", {}, Exception("disk full"))

        monkeypatch.setattr(ConversationStore, "ensure", failing_ensure)

        outcome = await orchestrator.process("user-1", GenerationRequest(prompt="persist me"))

        assert outcome.billed is False
        assert outcome.credits_remaining == 100
        assert outcome.conversation_id is None
        assert await _credits(session_factory, test_settings) == 100
        assert await _records(session_factory) == []
