"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.session import get_db
from app.observability.logging import get_logger
from app.services.billing_reconciler import BillingEventReconciler
from app.services.checkout import CheckoutService
from app.services.conversation_store import ConversationStore
from app.services.credit_ledger import CreditLedger
from app.services.generation_log import GenerationLog
from app.services.orchestrator import GenerationOrchestrator

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity from a gateway-issued JWT."""

    user_id: str
    email: str | None = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    config: Settings = Depends(get_settings),
) -> Principal:
    """
    Validate the bearer JWT and extract the user.

    Accepts: Authorization: Bearer {jwt}
    Verifies: HS256 signature with AUTH_JWT_SECRET and expiry
    Extracts: ``sub`` claim as the user id

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")

    if not config.auth_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: AUTH_JWT_SECRET not set",
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            config.auth_jwt_secret,
            algorithms=["HS256"],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_token_expired")
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_token_invalid", error=str(e))
        raise _unauthorized("Invalid token")

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise _unauthorized("Token has no subject")

    email = payload.get("email")
    return Principal(user_id=user_id, email=email if isinstance(email, str) else None)


async def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    config: Settings = Depends(get_settings),
) -> None:
    """
    Guard for scheduled jobs: bearer token must equal CRON_SECRET.

    Raises:
        HTTPException 401 if missing or wrong, 503 if no secret is configured
    """
    if not config.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron endpoint disabled: CRON_SECRET not set",
        )
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), config.cron_secret.encode()
    ):
        logger.warning("cron_secret_rejected")
        raise _unauthorized("Invalid cron secret")


# ============================================================================
# Services (constructed once in the lifespan, stored on app.state)
# ============================================================================


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Generation orchestrator built at start-up."""
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    return orchestrator


def get_reconciler(request: Request) -> BillingEventReconciler:
    """Billing event reconciler built at start-up."""
    reconciler: BillingEventReconciler = request.app.state.reconciler
    return reconciler


def get_checkout_service(request: Request) -> CheckoutService:
    """Checkout service built at start-up."""
    checkout: CheckoutService = request.app.state.checkout
    return checkout


async def get_ledger(
    db: AsyncSession = Depends(get_db), config: Settings = Depends(get_settings)
) -> CreditLedger:
    """Credit ledger bound to the request session."""
    return CreditLedger(db, config)


async def get_conversation_store(db: AsyncSession = Depends(get_db)) -> ConversationStore:
    """Conversation store bound to the request session."""
    return ConversationStore(db)


async def get_generation_log(db: AsyncSession = Depends(get_db)) -> GenerationLog:
    """Generation log bound to the request session."""
    return GenerationLog(db)
