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
    TIER = "tier"
    REASON = "reason"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class BillingMetrics:
    """
    Centralized metrics for Synapse Billing API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Usage recording (rate, tokens, cost by tier)
    - Admission checks (allowed/denied by reason)
    - Billing cycle lifecycle and overage invoicing batches
    - Provider webhooks and request-path retries
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "billing_service",
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
            "billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Usage Metrics
        # ====================================================================
        self.usage_records_total = Counter(
            "billing_usage_records_total",
            "Total usage records written",
            [MetricLabels.TIER],
        )

        self.usage_tokens_total = Counter(
            "billing_usage_tokens_total",
            "Total tokens metered",
            [MetricLabels.TIER],
        )

        self.usage_cost_usd_total = Counter(
            "billing_usage_cost_usd_total",
            "Total metered token cost in USD",
            [MetricLabels.TIER],
        )

        # ====================================================================
        # Admission Metrics
        # ====================================================================
        self.limit_checks_total = Counter(
            "billing_limit_checks_total",
            "Total token/conversation limit checks",
            ["allowed", MetricLabels.REASON],
        )

        # ====================================================================
        # Billing Cycle Metrics
        # ====================================================================
        self.billing_cycles_created_total = Counter(
            "billing_cycles_created_total",
            "Billing cycles opened",
            [MetricLabels.OPERATION],
        )

        self.billing_cycles_completed_total = Counter(
            "billing_cycles_completed_total",
            "Billing cycles closed",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Overage Invoicing Metrics
        # ====================================================================
        self.overage_cycles_total = Counter(
            "billing_overage_cycles_total",
            "Expired cycles handled by the overage batch",
            [MetricLabels.OUTCOME],
        )

        self.overage_invoiced_cents_total = Counter(
            "billing_overage_invoiced_cents_total",
            "Overage amount invoiced in cents",
        )

        self.overage_batch_duration_seconds = Histogram(
            "billing_overage_batch_duration_seconds",
            "Overage batch duration in seconds",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "billing_webhook_events_total",
            "Payment provider webhook events",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.provider_retries_total = Counter(
            "billing_provider_retries_total",
            "Retries of request-path payment provider calls",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "billing_errors_total",
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

    def record_usage(self, tier: str, tokens: int, cost: float) -> None:
        """Record one metered turn."""
        self.usage_records_total.labels(tier=tier).inc()
        self.usage_tokens_total.labels(tier=tier).inc(tokens)
        self.usage_cost_usd_total.labels(tier=tier).inc(cost)

    def record_limit_check(self, allowed: bool, reason: str | None) -> None:
        """Record admission check metrics."""
        self.limit_checks_total.labels(allowed=str(allowed), reason=reason or "none").inc()

    def record_overage_cycle(self, outcome: str, amount_cents: int = 0) -> None:
        """Record one cycle handled by the overage batch (invoiced, closed, error)."""
        self.overage_cycles_total.labels(outcome=outcome).inc()
        if amount_cents:
            self.overage_invoiced_cents_total.inc(amount_cents)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()
