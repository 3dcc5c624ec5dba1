"""
Prometheus metrics for payment orchestration.

Tracks:
- Gateway calls by provider, operation and outcome
- Payments created and their amounts
- Duplicate transaction rejections
- Refunds and voids
- Webhook events
"""
from prometheus_client import Counter, Histogram

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway calls",
    ["provider", "operation", "outcome"],  # outcome: success, declined, redirect, cancelled, error
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Gateway call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payments_created_total = Counter(
    "payments_created_total",
    "Total payments persisted to the ledger",
    ["currency"],
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Payment amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

duplicate_transactions_total = Counter(
    "duplicate_transactions_total",
    "Transaction references rejected as already processed",
    ["source"],  # check, constraint
)

refunds_total = Counter(
    "refunds_total",
    "Refund attempts by outcome",
    ["outcome"],  # refunded, voided, local, declined, noop
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events by provider and status",
    ["provider", "status"],  # processed, ignored, unsupported, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(
            provider=provider, operation=operation, outcome=outcome
        ).inc()
        gateway_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_payment_created(currency: str, amount_cents: int) -> None:
        payments_created_total.labels(currency=currency).inc()
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_duplicate_transaction(source: str) -> None:
        duplicate_transactions_total.labels(source=source).inc()

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(provider: str, status: str) -> None:
        webhook_events_total.labels(provider=provider, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
