"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from app.models.api import EntitlementErrorKind, EntitlementStatus


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class ValidationError(ServiceError):
    """Raised when a request is malformed (missing prompt or user)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation error: {message}")


# ============================================================================
# Entitlement
# ============================================================================


class EntitlementError(ServiceError):
    """Raised when the entitlement does not permit a generation."""

    def __init__(self, kind: EntitlementErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"Entitlement error ({kind.value}): {message}")

    @classmethod
    def from_status(cls, status: EntitlementStatus, message: str) -> "EntitlementError":
        """Map a refusing status to the user-facing error kind."""
        if status == EntitlementStatus.EXPIRED:
            return cls(EntitlementErrorKind.TRIAL_EXPIRED, message)
        return cls(EntitlementErrorKind.INSUFFICIENT_CREDITS, message)


class InsufficientCreditsError(ServiceError):
    """Raised when the atomic spend finds fewer credits than required."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class EntitlementNotFoundError(ServiceError):
    """Raised when a user has no provisioned entitlement."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Entitlement not found for user: {user_id}")


# ============================================================================
# Generation
# ============================================================================


class GenerationError(ServiceError):
    """Base for failures of the generative capability. Never billed."""

    kind = "generation_failed"


class GenerationTimeoutError(GenerationError):
    """Raised when the generation call exceeds its timeout."""

    kind = "timeout"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Generation timed out after {timeout_seconds}s")


class UpstreamGenerationError(GenerationError):
    """Raised when the generative capability answers with a non-success status."""

    kind = "upstream_error"

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Upstream generation error {status_code}: {body[:200]}")


class UnparsableOutputError(GenerationError):
    """Raised when no structured document can be recovered from the output."""

    kind = "unparsable_output"

    def __init__(self, preview: str) -> None:
        self.preview = preview
        super().__init__(f"Generation output is not a structured document: {preview[:100]}")


# ============================================================================
# Persistence
# ============================================================================


class PersistenceError(ServiceError):
    """Raised when the catalog or the transactional store is unavailable."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Persistence error: {message}")


class ConversationNotFoundError(ServiceError):
    """Raised when a conversation does not exist or belongs to another user."""

    def __init__(self, conversation_id: UUID) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


# ============================================================================
# Reconciliation
# ============================================================================


class ReconciliationError(ServiceError):
    """Base for payment event reconciliation failures."""

    pass


class WebhookVerificationError(ReconciliationError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class MalformedEventError(ReconciliationError):
    """Raised when an authentic event lacks the data needed to apply it."""

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Malformed event {event_id}: {reason}")


# ============================================================================
# Payment Provider
# ============================================================================


class PaymentProviderError(ServiceError):
    """Raised when the payment provider rejects or fails an API call."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")
