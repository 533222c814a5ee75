"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Reconciliation outcomes and duration per gateway
- Orders created and insert conflicts lost to the other writer
- Retry attempts by classification
- Notification outcomes per recipient role
- Stripe webhook events
"""
from prometheus_client import Counter, Histogram

reconciliations_total = Counter(
    "reconciliations_total",
    "Total reconciliation invocations",
    ["gateway", "outcome"],  # outcome: done, or a failure reason
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "End-to-end reconciliation duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

orders_created_total = Counter(
    "orders_created_total",
    "Total orders inserted by this process",
    ["gateway"],
)

order_insert_conflicts_total = Counter(
    "order_insert_conflicts_total",
    "Inserts that lost the uniqueness race to another writer",
    ["gateway"],
)

retry_attempts_total = Counter(
    "retry_attempts_total",
    "Failed attempts seen by the retry executor",
    ["operation", "classification"],  # retryable, fatal
)

notifications_total = Counter(
    "notifications_total",
    "Notification job outcomes",
    ["recipient_role", "status"],  # sent, failed, skipped
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Stripe webhook events handled",
    ["event_type", "status"],  # processed, ignored, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reconciliation(gateway: str, outcome: str, duration_seconds: float) -> None:
        """Record a front door invocation."""
        reconciliations_total.labels(gateway=gateway, outcome=outcome).inc()
        reconciliation_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_order_created(gateway: str) -> None:
        orders_created_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_insert_conflict(gateway: str) -> None:
        order_insert_conflicts_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_retry_attempt(operation: str, classification: str) -> None:
        """Record a failed attempt."""
        retry_attempts_total.labels(
            operation=operation, classification=classification
        ).inc()

    @staticmethod
    def record_notification(recipient_role: str, status: str) -> None:
        notifications_total.labels(recipient_role=recipient_role, status=status).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(event_type=event_type, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
