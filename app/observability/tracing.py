"""
Distributed Tracing with OpenTelemetry.

Spans cover the HTTP surface, database queries and each generation run,
exported over OTLP to the collector.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from app.config import settings

TRACER_NAME = "app.operations"

# Endpoints polled by orchestration and scraping, not worth a span each
UNTRACED_URLS = "health,metrics"


def setup_tracing() -> None:
    """Install the global TracerProvider with a ratio sampler and OTLP export."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.deployment_environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.tracing_sample_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every request except health checks and metric scrapes."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set attributes, skipping None and stringifying UUIDs and enums."""
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


class trace_operation:
    """
    Span around one service operation, marked as an error when it raises.

    Usage:
        with trace_operation("workflow_generation", user_id=user_id) as span:
            span.set_attribute("billed", True)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self._cm: Any = None

    def __enter__(self) -> Span:
        tracer = trace.get_tracer(TRACER_NAME)
        self._cm = tracer.start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        span: Span = self._cm.__enter__()
        add_span_attributes(span, **self.attributes)
        return span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_val is not None:
            span = trace.get_current_span()
            span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            kind = getattr(exc_val, "kind", None)
            span.set_attribute("error.kind", getattr(kind, "value", kind) or type(exc_val).__name__)
            span.record_exception(exc_val)
        self._cm.__exit__(exc_type, exc_val, exc_tb)
