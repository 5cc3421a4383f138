"""
Prometheus metrics for payment monitoring.

Tracks:
- Charge, query and refund outcomes
- Gateway call counts, errors and latency
- Circuit breaker state
- Webhook events by type and outcome
- Stale webhook updates ignored by the lifecycle guard
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Total number of payment operations",
    ["operation", "outcome"],  # operation: charge, query, refund
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "Payment operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_amount_minor_units = Histogram(
    "payment_amount_minor_units",
    "Charged amounts in minor currency units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["provider", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "event_type", "status"],  # processed, duplicate, stale, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_operation(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a charge/query/refund outcome."""
        payment_requests_total.labels(operation=operation, outcome=outcome).inc()
        payment_processing_duration_seconds.labels(operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_charge_amount(amount: int) -> None:
        """Record a charged amount."""
        payment_amount_minor_units.observe(amount)

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        gateway_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(provider: str, error_type: str) -> None:
        """Record a classified gateway error."""
        gateway_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
