"""
Prometheus metrics for payment system monitoring.

Tracks:
- Payment initialisations and verifications by outcome
- Paystack API calls and latency
- Webhook events by type and outcome
- Status transitions, with race outcomes counted apart from failures
- Rate limit rejections
- Reconciliation sweep results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_initializations_total = Counter(
    "payment_initializations_total",
    "Total payment initialisation requests",
    ["outcome", "currency"],  # created, invalid, gateway_error, persistence_error
)

payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total payment verification requests",
    ["status"],
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "Payment operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_amount = Histogram(
    "payment_amount",
    "Initialised payment amounts in major currency units",
    buckets=(1, 10, 100, 1000, 10000, 100000, 1000000, 10000000),
)

# Paystack API metrics
paystack_api_requests_total = Counter(
    "paystack_api_requests_total",
    "Total Paystack API requests",
    ["operation", "status"],  # operation: initialize, verify
)

paystack_api_errors_total = Counter(
    "paystack_api_errors_total",
    "Total Paystack API errors",
    ["error_type"],  # transient, permanent, rate_limit, not_found
)

paystack_api_duration_seconds = Histogram(
    "paystack_api_duration_seconds",
    "Paystack API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
paystack_circuit_breaker_state = Gauge(
    "paystack_circuit_breaker_state",
    "Paystack circuit breaker state (0=closed, 1=open, 2=half_open)",
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
    ["event_type", "outcome"],  # applied, unchanged, already_terminal, lost_race, ignored, not_found
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook requests rejected for a missing or invalid signature",
    ["reason"],  # missing, invalid
)

webhook_status_mismatches_total = Counter(
    "webhook_status_mismatches_total",
    "Charge events whose data.status disagrees with the event type",
    ["event_type"],
)

# Status transition metrics
status_transitions_total = Counter(
    "status_transitions_total",
    "Status transition attempts",
    ["source", "outcome"],  # source: webhook, verify, sweep, initialize
)

# Rate limiting metrics
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["scope"],
)

# Reconciliation metrics
reconciliation_transactions_checked_total = Counter(
    "reconciliation_transactions_checked_total",
    "Transactions re-verified by the reconciliation sweep",
    ["result"],  # updated, unchanged, error
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_initialization(outcome: str, currency: str, amount: float = 0) -> None:
        """Record a payment initialisation request."""
        payment_initializations_total.labels(outcome=outcome, currency=currency).inc()
        if amount > 0:
            payment_amount.observe(amount)

    @staticmethod
    def record_payment_verification(status: str) -> None:
        """Record a payment verification request."""
        payment_verifications_total.labels(status=status).inc()

    @staticmethod
    def record_payment_duration(operation: str, duration_seconds: float) -> None:
        """Record payment operation duration."""
        payment_processing_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_paystack_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Paystack API call."""
        paystack_api_requests_total.labels(operation=operation, status=status).inc()
        paystack_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_paystack_api_error(error_type: str) -> None:
        """Record Paystack API error."""
        paystack_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        paystack_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_signature_failure(reason: str) -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_webhook_status_mismatch(event_type: str) -> None:
        webhook_status_mismatches_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_status_transition(source: str, outcome: str) -> None:
        """Record a status transition attempt."""
        status_transitions_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_rate_limit_rejection(scope: str) -> None:
        """Record a rate limited request."""
        rate_limit_rejections_total.labels(scope=scope).inc()

    @staticmethod
    def record_reconciliation_sweep(
        updated: int, unchanged: int, errors: int, duration_seconds: float
    ) -> None:
        """Record reconciliation sweep results."""
        reconciliation_transactions_checked_total.labels(result="updated").inc(updated)
        reconciliation_transactions_checked_total.labels(result="unchanged").inc(unchanged)
        reconciliation_transactions_checked_total.labels(result="error").inc(errors)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
