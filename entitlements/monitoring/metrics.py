"""
Prometheus metrics for the entitlements service.

Tracks:
- Webhook events by type and outcome
- Orders created vs. duplicate deliveries, unresolved items
- Download attempts by outcome
- Refund handling and revoked tokens
- Remote calls (Stripe, blob store) and circuit breaker state
- Reconciliation divergence
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total verified webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, failed
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook requests rejected for an invalid signature",
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Fulfillment metrics
orders_fulfilled_total = Counter(
    "orders_fulfilled_total",
    "Payment completions handled by the fulfillment orchestrator",
    ["result"],  # created, duplicate
)

order_items_unresolved_total = Counter(
    "order_items_unresolved_total",
    "Order items stored without a catalog product",
)

download_tokens_issued_total = Counter(
    "download_tokens_issued_total",
    "Download tokens issued",
)

fulfillment_side_effect_failures_total = Counter(
    "fulfillment_side_effect_failures_total",
    "Best-effort fulfillment side effects that failed",
    ["side_effect"],  # provisioning, notification
)

# Download metrics
download_attempts_total = Counter(
    "download_attempts_total",
    "Download attempts by outcome",
    ["outcome"],  # success, token_not_found, token_revoked, token_expired, ...
)

# Refund metrics
refund_events_total = Counter(
    "refund_events_total",
    "Refund events applied by the revocation handler",
    ["outcome"],  # full_refund, partial_refund, already_refunded, target_missing
)

download_tokens_revoked_total = Counter(
    "download_tokens_revoked_total",
    "Download tokens deactivated by refunds",
)

# Remote call metrics
remote_requests_total = Counter(
    "remote_requests_total",
    "Total requests to remote collaborators",
    ["service", "operation", "status"],
)

remote_request_duration_seconds = Histogram(
    "remote_request_duration_seconds",
    "Remote call duration in seconds",
    ["service", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"],
)

# Reconciliation metrics
reconciliation_orphaned_transactions = Gauge(
    "reconciliation_orphaned_transactions",
    "Provider transactions without a local order in the last audited window",
)

reconciliation_amount_difference = Gauge(
    "reconciliation_amount_difference",
    "Absolute difference between provider and local totals in the last audited window",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_signature_failure() -> None:
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_order_fulfilled(created: bool, unresolved_items: int, tokens_issued: int) -> None:
        """Record one fulfillment outcome."""
        orders_fulfilled_total.labels(result="created" if created else "duplicate").inc()
        if unresolved_items:
            order_items_unresolved_total.inc(unresolved_items)
        if tokens_issued:
            download_tokens_issued_total.inc(tokens_issued)

    @staticmethod
    def record_side_effect_failure(side_effect: str) -> None:
        fulfillment_side_effect_failures_total.labels(side_effect=side_effect).inc()

    @staticmethod
    def record_download_attempt(outcome: str) -> None:
        download_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_refund_event(outcome: str, tokens_revoked: int) -> None:
        """Record a refund applied to the ledger."""
        refund_events_total.labels(outcome=outcome).inc()
        if tokens_revoked:
            download_tokens_revoked_total.inc(tokens_revoked)

    @staticmethod
    def record_remote_call(
        service: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a call to Stripe or the blob store."""
        remote_requests_total.labels(service=service, operation=operation, status=status).inc()
        remote_request_duration_seconds.labels(service=service, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def update_circuit_breaker_state(service: str, state_code: int) -> None:
        circuit_breaker_state.labels(service=service).set(state_code)

    @staticmethod
    def set_reconciliation_metrics(
        orphaned_count: int, amount_difference: float, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_orphaned_transactions.set(orphaned_count)
        reconciliation_amount_difference.set(amount_difference)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
