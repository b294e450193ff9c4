"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from app.api.billing_routes import router as billing_router
from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_session_factory
from app.exceptions import (
    EntitlementError,
    EntitlementNotFoundError,
    GenerationError,
    GenerationTimeoutError,
    PaymentProviderError,
    PersistenceError,
    ValidationError,
)
from app.models.api import EntitlementErrorResponse, GenerationErrorResponse
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi
from app.services.billing_reconciler import BillingEventReconciler
from app.services.catalog import SqlCatalogRepository
from app.services.checkout import CheckoutService
from app.services.context_builder import ContextBuilder
from app.services.generation_client import GenerationClient
from app.services.orchestrator import GenerationOrchestrator
from app.services.stripe_provider import StripeProvider

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Applies migrations and builds the service objects shared by all requests.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    session_factory = get_session_factory()
    generation_client = GenerationClient.from_settings(settings)
    app.state.orchestrator = GenerationOrchestrator(
        session_factory,
        ContextBuilder(SqlCatalogRepository(session_factory)),
        generation_client,
        settings,
    )
    stripe_provider = StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    app.state.reconciler = BillingEventReconciler(session_factory, stripe_provider, settings)
    app.state.checkout = CheckoutService(stripe_provider, settings)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await generation_client.aclose()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


@app.exception_handler(ValidationError)
async def service_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Malformed request detected below the HTTP layer."""
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """402 with an upgrade signal."""
    body = EntitlementErrorResponse(error_kind=exc.kind, message=exc.message)
    return JSONResponse(status_code=402, content=body.model_dump(mode="json"))


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    """Generation failures are never billed and may be retried."""
    status_code = 504 if isinstance(exc, GenerationTimeoutError) else 502
    body = GenerationErrorResponse(error_kind=exc.kind, message=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("persistence_unavailable", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})


@app.exception_handler(PaymentProviderError)
async def payment_provider_error_handler(
    request: Request, exc: PaymentProviderError
) -> JSONResponse:
    logger.error("payment_provider_unavailable", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=502, content={"detail": "Payment provider unavailable"})


@app.exception_handler(EntitlementNotFoundError)
async def entitlement_not_found_handler(
    request: Request, exc: EntitlementNotFoundError
) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)

        # Track in-progress requests
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            # Record metrics
            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Generation, entitlement and conversation routes
app.include_router(billing_router)  # Payment webhooks and credit expiry


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
