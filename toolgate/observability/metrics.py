"""
Metrics Collection with Prometheus.

Exposes authorization, settlement and invocation metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from toolgate.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    GRANT_TYPE = "grant_type"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the Toolgate API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - OAuth (authorization decisions, token issuance, client registrations)
    - Settlements (outcome, amount, duration, ledger errors)
    - Tool invocations (outcome, upstream duration)
    - Cleanup passes (reclaimed entries)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "toolgate_service",
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
            "toolgate_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "toolgate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "toolgate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # OAuth Metrics
        # ====================================================================
        self.authorization_decisions_total = Counter(
            "toolgate_authorization_decisions_total",
            "Authorization decisions by outcome",
            [MetricLabels.OUTCOME],
        )

        self.tokens_issued_total = Counter(
            "toolgate_tokens_issued_total",
            "Token endpoint results by grant type",
            [MetricLabels.GRANT_TYPE, MetricLabels.OUTCOME],
        )

        self.clients_registered_total = Counter(
            "toolgate_clients_registered_total",
            "OAuth clients registered",
            ["kind"],
        )

        self.token_verifications_total = Counter(
            "toolgate_token_verifications_total",
            "Bearer token verifications at the auth gate",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Settlement Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "toolgate_settlements_total",
            "Settlement attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.settlement_amount_minor = Histogram(
            "toolgate_settlement_amount_minor",
            "Settled amounts in ledger minor units",
            buckets=(1, 5, 10, 50, 100, 500, 1000, 5000, 10000, 100000),
        )

        self.settlement_duration_seconds = Histogram(
            "toolgate_settlement_duration_seconds",
            "Ledger transfer duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.payment_required_total = Counter(
            "toolgate_payment_required_total",
            "Calls answered with 402 by action required",
            ["action_required"],
        )

        # ====================================================================
        # Tool Invocation Metrics
        # ====================================================================
        self.tool_invocations_total = Counter(
            "toolgate_tool_invocations_total",
            "Outbound tool invocations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.tool_invocation_duration_seconds = Histogram(
            "toolgate_tool_invocation_duration_seconds",
            "Upstream tool call duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Maintenance Metrics
        # ====================================================================
        self.expired_entries_purged_total = Counter(
            "toolgate_expired_entries_purged_total",
            "Expired store entries reclaimed by the sweeper",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "toolgate_errors_total",
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

    def record_token_issued(self, grant_type: str, outcome: str) -> None:
        """Record a token endpoint result."""
        self.tokens_issued_total.labels(grant_type=grant_type, outcome=outcome).inc()

    def record_settlement(self, outcome: str, amount_minor: int, duration: float) -> None:
        """Record a settlement attempt."""
        self.settlements_total.labels(outcome=outcome).inc()
        if outcome == "completed":
            self.settlement_amount_minor.observe(amount_minor)
        self.settlement_duration_seconds.observe(duration)

    def record_tool_invocation(self, outcome: str, duration: float) -> None:
        """Record an outbound tool call."""
        self.tool_invocations_total.labels(outcome=outcome).inc()
        self.tool_invocation_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
