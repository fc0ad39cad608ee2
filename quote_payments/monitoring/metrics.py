"""
Prometheus metrics for quote and payment monitoring.

Tracks:
- Quote status transitions
- Payment applications (paid, failed, refunded)
- Gateway calls, errors and retries
- Webhook events by type and outcome
- Security rejections
"""
from prometheus_client import Counter, Histogram

# Quote metrics
quote_transitions_total = Counter(
    "quote_transitions_total",
    "Total quote status transitions",
    ["from_status", "to_status"],
)

quotes_created_total = Counter(
    "quotes_created_total",
    "Total quotes created",
    ["currency"],
)

# Payment metrics
payment_applications_total = Counter(
    "payment_applications_total",
    "Total payment state changes applied to quotes",
    ["outcome", "source"],  # outcome: paid, failed, refunded; source: confirm, webhook
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Captured payment amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: create_intent, confirm_intent, create_refund
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit, card
)

gateway_retries_total = Counter(
    "gateway_retries_total",
    "Total payment gateway retries",
    ["operation"],
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # accepted, ignored, duplicate, in_flight, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Security metrics
security_rejections_total = Counter(
    "security_rejections_total",
    "Total webhook deliveries rejected before processing",
    ["reason"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_quote_created(currency: str) -> None:
        """Record a new quote."""
        quotes_created_total.labels(currency=currency).inc()

    @staticmethod
    def record_quote_transition(from_status: str, to_status: str) -> None:
        """Record a quote status transition."""
        quote_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_payment_applied(outcome: str, source: str, amount_cents: int = 0) -> None:
        """Record a payment state change applied to a quote."""
        payment_applications_total.labels(outcome=outcome, source=source).inc()
        if outcome == "paid" and amount_cents:
            payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a payment gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_gateway_retry(operation: str) -> None:
        """Record a payment gateway retry."""
        gateway_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_security_rejection(reason: str) -> None:
        """Record a webhook rejected before processing."""
        security_rejections_total.labels(reason=reason).inc()


# Export singleton instance
metrics = MetricsCollector()
