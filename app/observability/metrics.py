"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    STATUS = "status"
    KIND = "kind"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GenerationMetrics:
    """
    Centralized metrics for the Workflow Generation API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Entitlement checks by resulting status
    - Generations by outcome and duration
    - Credit spends, grants and expirations
    - Payment webhook events by kind and outcome
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "workflow_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "workflow_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "workflow_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 90.0),
        )

        self.http_requests_in_progress = Gauge(
            "workflow_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_checks_total = Counter(
            "workflow_entitlement_checks_total",
            "Total entitlement checks by resulting status",
            [MetricLabels.STATUS],
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.generations_total = Counter(
            "workflow_generations_total",
            "Total generation runs by outcome",
            [MetricLabels.OUTCOME],
        )

        self.generation_duration_seconds = Histogram(
            "workflow_generation_duration_seconds",
            "Generation call duration in seconds",
            ["fast"],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0),
        )

        self.unbilled_generations_total = Counter(
            "workflow_unbilled_generations_total",
            "Generations returned without a recorded spend",
            ["reason"],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_spends_total = Counter(
            "workflow_credit_spends_total",
            "Total credit spend attempts",
            ["success"],
        )

        self.credits_granted_total = Counter(
            "workflow_credits_granted_total",
            "Total credits granted by history kind",
            [MetricLabels.KIND],
        )

        self.credits_expired_total = Counter(
            "workflow_credits_expired_total",
            "Total purchased credits removed by the expiry batch",
        )

        self.entitlements_provisioned_total = Counter(
            "workflow_entitlements_provisioned_total",
            "Total entitlements created with trial defaults",
        )

        # ====================================================================
        # Payment Event Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "workflow_webhook_events_total",
            "Total payment webhook events by kind and outcome",
            [MetricLabels.KIND, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "workflow_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_entitlement_check(self, status: str) -> None:
        """Record entitlement check metrics."""
        self.entitlement_checks_total.labels(status=status).inc()

    def record_generation(self, outcome: str, duration: float, fast: bool) -> None:
        """Record a generation run (outcome is 'success' or a GenerationError kind)."""
        self.generations_total.labels(outcome=outcome).inc()
        self.generation_duration_seconds.labels(fast=str(fast)).observe(duration)

    def record_unbilled_generation(self, reason: str) -> None:
        """Record a generation returned without a committed spend."""
        self.unbilled_generations_total.labels(reason=reason).inc()

    def record_spend(self, success: bool) -> None:
        """Record credit spend metrics."""
        self.credit_spends_total.labels(success=str(success)).inc()

    def record_grant(self, kind: str, amount: int) -> None:
        """Record credits granted."""
        self.credits_granted_total.labels(kind=kind).inc(amount)

    def record_expiration(self, amount: int) -> None:
        """Record credits removed by expiry."""
        self.credits_expired_total.inc(amount)

    def record_webhook_event(self, kind: str, outcome: str) -> None:
        """Record payment webhook metrics."""
        self.webhook_events_total.labels(kind=kind, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GenerationMetrics()
