"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Real SQLite databases (aiosqlite) for ledger, reconciler and orchestrator tests
- Mock database sessions for pure unit tests
- Stub generation boundary and in-memory catalog
- API test client with service overrides and signed JWTs
"""

import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")

import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings, settings
from app.db.models import Base
from app.exceptions import GenerationError, PaymentProviderError
from app.models.domain import (
    CheckoutIntent,
    CheckoutSession,
    ExemplarPattern,
    GenerationContext,
    GenerationResult,
    TemplateSkeleton,
    Tip,
    WorkflowDocument,
)
from app.services.catalog import InMemoryCatalog
from app.services.context_builder import ContextBuilder

# ============================================================================
# Database Fixtures
# ============================================================================


def _serialize_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN defers locking, which turns concurrent
    read-then-write transactions into "database is locked" errors; BEGIN
    IMMEDIATE queues them instead, the way row locks do on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    _serialize_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session with sensible defaults."""
    session = AsyncMock(spec=AsyncSession)

    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.get = AsyncMock(return_value=None)

    mock_result = MagicMock()
    mock_result.scalar_one_or_none = MagicMock(return_value=None)
    mock_result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=[])))
    session.execute = AsyncMock(return_value=mock_result)

    return session


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Pricing configuration with the documented defaults."""
    return settings.model_copy(
        update={
            "trial_credits": 100,
            "trial_days": 7,
            "starter_monthly_credits": 300,
            "pro_monthly_credits": 500,
            "payg_pack_credits": 100,
            "purchased_credit_expiry_days": 30,
            "generation_cost_credits": 1,
            "return_unbilled_on_spend_race": True,
            "stripe_price_starter": "price_starter_test",
            "stripe_price_pro": "price_pro_test",
            "stripe_price_payg_pack": "price_pack_test",
        }
    )


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ============================================================================
# Catalog & Generation Boundary
# ============================================================================


SAMPLE_WORKFLOW: dict[str, Any] = {
    "name": "Sheet to Telegram",
    "nodes": [
        {"name": "Schedule", "type": "n8n-nodes-base.scheduleTrigger", "parameters": {}},
        {"name": "Telegram", "type": "n8n-nodes-base.telegram", "parameters": {}},
    ],
    "connections": {"Schedule": {"main": [[{"node": "Telegram", "type": "main", "index": 0}]]}},
}


@pytest.fixture
def catalog() -> InMemoryCatalog:
    """Small catalog snapshot covering a few node types."""
    return InMemoryCatalog(
        patterns=[
            ExemplarPattern(
                node_type="n8n-nodes-base.telegram",
                node_name="Telegram",
                node_config={"operation": "sendMessage"},
                use_case="Send a chat message",
            ),
            ExemplarPattern(
                node_type="n8n-nodes-base.set",
                node_name="Set",
                node_config={"values": {}},
            ),
            ExemplarPattern(
                node_type="n8n-nodes-base.postgres",
                node_name="Postgres",
                node_config={"operation": "executeQuery"},
            ),
        ],
        tips=[
            Tip(
                title="Name every node",
                content="Give nodes descriptive names.",
                category="general",
                hints=(),
            ),
            Tip(
                title="Batch Telegram sends",
                content="Use SplitInBatches before Telegram.",
                category="messaging",
                hints=("n8n-nodes-base.telegram",),
            ),
            Tip(
                title="Use connection pooling",
                content="Reuse database credentials.",
                category="database",
                hints=("n8n-nodes-base.postgres",),
            ),
        ],
        templates=[
            TemplateSkeleton(
                name="Telegram digest",
                workflow_json={"nodes": [], "connections": {}},
                use_cases=("notifications",),
                hints=("n8n-nodes-base.telegram",),
            ),
        ],
    )


@pytest.fixture
def context_builder(catalog: InMemoryCatalog) -> ContextBuilder:
    return ContextBuilder(catalog)


class StubGenerationClient:
    """Generation boundary double: returns a fixed result or raises."""

    def __init__(
        self,
        document: Any = None,
        commentary: str | None = "Here is your workflow.",
        error: GenerationError | None = None,
    ) -> None:
        self.document = document if document is not None else SAMPLE_WORKFLOW
        self.commentary = commentary
        self.error = error
        self.calls: list[tuple[GenerationContext, bool]] = []

    async def generate(self, context: GenerationContext, fast: bool = False) -> GenerationResult:
        self.calls.append((context, fast))
        if self.error is not None:
            raise self.error
        return GenerationResult(
            document=WorkflowDocument(content=self.document),
            commentary=self.commentary,
            model="test-model",
            latency_ms=5,
        )


@pytest.fixture
def sample_workflow() -> dict[str, Any]:
    return SAMPLE_WORKFLOW


@pytest.fixture
def stub_client_class() -> type[StubGenerationClient]:
    """The stub class, for tests that need a failing or custom boundary."""
    return StubGenerationClient


@pytest.fixture
def generation_client() -> StubGenerationClient:
    return StubGenerationClient()


class StubCheckoutProvider:
    """Checkout provider double: records intents and returns a fixed session."""

    provider_type = "stripe"

    def __init__(self, error: PaymentProviderError | None = None) -> None:
        self.error = error
        self.intents: list[CheckoutIntent] = []

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        self.intents.append(intent)
        if self.error is not None:
            raise self.error
        return CheckoutSession(
            session_id=f"cs_test_{len(self.intents)}",
            url=f"https://checkout.stripe.test/{len(self.intents)}",
        )


@pytest.fixture
def checkout_provider() -> StubCheckoutProvider:
    return StubCheckoutProvider()


# ============================================================================
# Auth Fixtures
# ============================================================================


def make_token(user_id: str, secret: str | None = None, expires_in: int = 3600) -> str:
    """Signed HS256 principal token."""
    payload = {
        "sub": user_id,
        "email": f"{user_id}@example.com",
        "exp": datetime.now(UTC) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret or settings.auth_jwt_secret, algorithm="HS256")


@pytest.fixture
def token_for():
    """Factory for signed principal tokens."""
    return make_token


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authorization header for user-1."""
    return {"Authorization": f"Bearer {make_token('user-1')}"}


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from app.main import app as main_app

    return main_app


@pytest.fixture
async def async_client(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    context_builder: ContextBuilder,
    generation_client: StubGenerationClient,
    checkout_provider: StubCheckoutProvider,
    test_settings: Settings,
) -> AsyncIterator[AsyncClient]:
    """
    Async client against the app wired to the test database.

    ASGITransport does not run the lifespan, so the services it would build
    are placed on app.state here.
    """
    from app.config import get_settings
    from app.db.session import get_db
    from app.services.billing_reconciler import BillingEventReconciler
    from app.services.checkout import CheckoutService
    from app.services.orchestrator import GenerationOrchestrator
    from app.services.stripe_provider import StripeProvider

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.state.orchestrator = GenerationOrchestrator(
        session_factory, context_builder, generation_client, test_settings
    )
    app.state.reconciler = BillingEventReconciler(
        session_factory,
        StripeProvider(api_key="", webhook_secret=test_settings.stripe_webhook_secret),
        test_settings,
    )
    app.state.checkout = CheckoutService(checkout_provider, test_settings)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
