"""
Metrics Collection with Prometheus.

Exposes storefront business and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from storefront.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OUTCOME = "outcome"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"


class StorefrontMetrics:
    """
    Centralized metrics for the storefront.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Order captures by outcome, amount mismatches
    - Ledger appends
    - PayPal token exchanges
    - Downloads and grants
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "storefront_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
                "mode": settings.app_mode,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "storefront_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "storefront_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "storefront_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.captures_total = Counter(
            "storefront_captures_total",
            "Order capture attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.capture_duration_seconds = Histogram(
            "storefront_capture_duration_seconds",
            "End-to-end purchase capture duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.amount_mismatches_total = Counter(
            "storefront_amount_mismatches_total",
            "Captures rejected because the paid amount differs from the catalog price",
        )

        self.token_exchanges_total = Counter(
            "storefront_paypal_token_exchanges_total",
            "PayPal credential exchanges by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_appends_total = Counter(
            "storefront_ledger_appends_total",
            "Transaction ledger appends",
            ["success"],
        )

        self.ledger_append_duration_seconds = Histogram(
            "storefront_ledger_append_duration_seconds",
            "Transaction ledger append duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        # ====================================================================
        # Download Metrics
        # ====================================================================
        self.grants_issued_total = Counter(
            "storefront_grants_issued_total",
            "Download grants issued by source",
            ["source"],
        )

        self.downloads_total = Counter(
            "storefront_downloads_total",
            "Download redemptions by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "storefront_errors_total",
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

    def record_capture(self, outcome: str, duration: float) -> None:
        """Record a purchase capture attempt."""
        self.captures_total.labels(outcome=outcome).inc()
        self.capture_duration_seconds.observe(duration)
        if outcome == "amount_mismatch":
            self.amount_mismatches_total.inc()

    def record_token_exchange(self, outcome: str) -> None:
        self.token_exchanges_total.labels(outcome=outcome).inc()

    def record_ledger_append(self, success: bool, duration: float) -> None:
        """Record transaction ledger append metrics."""
        self.ledger_appends_total.labels(success=str(success)).inc()
        self.ledger_append_duration_seconds.observe(duration)

    def record_grant(self, source: str) -> None:
        self.grants_issued_total.labels(source=source).inc()

    def record_download(self, outcome: str) -> None:
        self.downloads_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = StorefrontMetrics()
