"""
Metrics Collection with Prometheus.

Exposes metering decisions and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from metering.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ACTION = "action"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class MeteringMetrics:
    """
    Centralized metrics for the metering service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Entitlement decisions (allowed/denied by action and reason)
    - Rate limiter outcomes
    - Download quota consumption
    - Billing event processing
    - Usage journal write failures
    """

    def __init__(self) -> None:
        """Register every collector on the default registry."""

        self.service_info = Info(
            "metering_service",
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
            "metering_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "metering_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Decision Metrics
        # ====================================================================
        self.decisions_total = Counter(
            "metering_decisions_total",
            "Entitlement decisions by action and outcome",
            [MetricLabels.ACTION.value, "allowed", MetricLabels.REASON.value, "consumed"],
        )

        self.decision_duration_seconds = Histogram(
            "metering_decision_duration_seconds",
            "Entitlement decision duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.period_resets_total = Counter(
            "metering_period_resets_total",
            "Periodic allowance refills applied",
        )

        # ====================================================================
        # Rate Limiter Metrics
        # ====================================================================
        self.rate_limit_checks_total = Counter(
            "metering_rate_limit_checks_total",
            "Rate limit checks by caller type and outcome",
            ["caller", "allowed"],
        )

        self.rate_limit_fallbacks_total = Counter(
            "metering_rate_limit_fallbacks_total",
            "Limit lookups that fell back to the anonymous default",
        )

        self.rate_limit_buckets = Gauge(
            "metering_rate_limit_buckets",
            "In-memory rate limit buckets held by this process",
        )

        # ====================================================================
        # Download Quota Metrics
        # ====================================================================
        self.downloads_total = Counter(
            "metering_downloads_total",
            "Artifact download attempts by outcome",
            ["allowed", MetricLabels.REASON.value],
        )

        # ====================================================================
        # Billing Event Metrics
        # ====================================================================
        self.billing_events_total = Counter(
            "metering_billing_events_total",
            "Billing events by kind and outcome",
            ["kind", "outcome"],
        )

        self.credits_granted_total = Counter(
            "metering_credits_granted_total",
            "Credits granted to entitlements",
        )

        # ====================================================================
        # Usage Journal / Error Metrics
        # ====================================================================
        self.usage_journal_failures_total = Counter(
            "metering_usage_journal_failures_total",
            "Usage journal writes that failed and were dropped",
        )

        self.errors_total = Counter(
            "metering_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Count and time one request, labelled by route template."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_decision(
        self,
        action: str,
        allowed: bool,
        reason: str | None,
        consumed: bool,
        duration: float,
    ) -> None:
        """Record an entitlement decision."""
        self.decisions_total.labels(
            action=action,
            allowed=str(allowed),
            reason=reason or "none",
            consumed=str(consumed),
        ).inc()
        self.decision_duration_seconds.observe(duration)

    def record_rate_limit(self, caller: str, allowed: bool) -> None:
        """Record a rate limit check."""
        self.rate_limit_checks_total.labels(caller=caller, allowed=str(allowed)).inc()

    def record_download(self, allowed: bool, reason: str | None) -> None:
        """Record a download attempt."""
        self.downloads_total.labels(allowed=str(allowed), reason=reason or "none").inc()

    def record_billing_event(self, kind: str, outcome: str) -> None:
        """Record billing event processing outcome."""
        self.billing_events_total.labels(kind=kind, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Count an error by exception type and the operation that raised it."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MeteringMetrics()
