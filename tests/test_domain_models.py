"""
Tests for domain and API models.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.models.api import (
    BillingEventKind,
    EntitlementStatus,
    GenerationRequest,
    HistoryKind,
    Plan,
)
from app.models.domain import (
    BillingEvent,
    EntitlementData,
    EntitlementReport,
    LedgerEntryData,
    WorkflowDocument,
)

NOW = datetime(2026, 3, 1, tzinfo=UTC)


class TestEntitlementData:
    """Tests for the EntitlementData snapshot."""

    def _data(self, **overrides):
        params = {
            "user_id": "user-1",
            "plan": Plan.TRIAL,
            "credits": 10,
            "trial_ends_at": NOW,
            "subscription_status": "none",
            "payment_customer_ref": None,
            "subscription_ref": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "created_at": NOW,
            "updated_at": NOW,
        }
        params.update(overrides)
        return EntitlementData(**params)

    def test_valid(self):
        assert self._data().credits == 10

    def test_negative_credits_rejected(self):
        """Balances can never be negative."""
        with pytest.raises(ValueError, match="negative"):
            self._data(credits=-1)

    def test_empty_user_rejected(self):
        with pytest.raises(ValueError):
            self._data(user_id="")

    def test_is_immutable(self):
        data = self._data()
        with pytest.raises(AttributeError):
            data.credits = 5


class TestEntitlementReport:
    """Tests for derived report flags."""

    @pytest.mark.parametrize(
        ("status", "permits"),
        [
            (EntitlementStatus.ACTIVE, True),
            (EntitlementStatus.GRACE, True),
            (EntitlementStatus.EXHAUSTED, False),
            (EntitlementStatus.EXPIRED, False),
        ],
    )
    def test_permits_spend(self, status, permits):
        report = EntitlementReport(
            user_id="user-1",
            status=status,
            plan=Plan.TRIAL,
            credits=5,
            days_remaining=1,
            days_used=6,
            trial_ends_at=NOW,
            subscription_status="none",
            message="",
        )
        assert report.permits_spend is permits
        assert report.upgrade_required is not permits


class TestLedgerEntryData:
    """Tests for the history consistency check."""

    def test_inconsistent_entry_rejected(self):
        """credits_after must equal credits_before + amount."""
        with pytest.raises(ValueError, match="Inconsistent"):
            LedgerEntryData(
                entry_id=uuid4(),
                user_id="user-1",
                kind=HistoryKind.USAGE,
                amount=-1,
                credits_before=10,
                credits_after=10,
                description="Workflow generation",
                related_generation_id=None,
                related_event_id=None,
                created_at=NOW,
            )


class TestWorkflowDocument:
    """Tests for the canonical document wrapper."""

    def test_object_and_array_accepted(self):
        assert WorkflowDocument(content={"nodes": []}).to_json() == '{"nodes": []}'
        assert WorkflowDocument(content=[1, 2]).to_json() == "[1, 2]"

    def test_scalar_rejected(self):
        with pytest.raises(ValueError):
            WorkflowDocument(content="not a document")

    def test_non_ascii_kept(self):
        assert "Café" in WorkflowDocument(content={"name": "Café"}).to_json()


class TestBillingEvent:
    """Tests for BillingEvent."""

    def test_defaults(self):
        event = BillingEvent(
            event_id="evt_1", kind=BillingEventKind.UNKNOWN, provider_type="stripe"
        )
        assert event.user_id is None
        assert event.cancel_at_period_end is False

    def test_empty_event_id_rejected(self):
        with pytest.raises(ValueError):
            BillingEvent(event_id="", kind=BillingEventKind.UNKNOWN, provider_type="stripe")


class TestGenerationRequest:
    """Tests for request validation."""

    def test_prompt_is_stripped(self):
        assert GenerationRequest(prompt="  build it  ").prompt == "build it"

    def test_blank_prompt_rejected(self):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="   ")

    def test_empty_prompt_rejected(self):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="")

    def test_too_many_attachments(self):
        attachment = {"name": "a.txt", "mime_type": "text/plain", "data": ""}
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="x", attachments=[attachment] * 6)


class TestPlan:
    """Tests for plan flags."""

    def test_subscription_plans(self):
        assert Plan.PRO.is_subscription
        assert Plan.STARTER.is_subscription
        assert not Plan.PAYG.is_subscription
        assert not Plan.TRIAL.is_subscription
