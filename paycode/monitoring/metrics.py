"""
Prometheus metrics for the payment-code ledger.

Tracks:
- Order creation and lifecycle transitions
- Settlement outcomes, duration and amounts
- Recharges and refunds
- Payment code collisions
- Conflict retries and per-key lock waits
- Reconciliation discrepancies
"""
import time

from prometheus_client import Counter, Gauge, Histogram

AMOUNT_BUCKETS = (50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000)

# Order metrics
orders_created_total = Counter(
    "paycode_orders_created_total",
    "Total orders created",
)

order_transitions_total = Counter(
    "paycode_order_transitions_total",
    "Order status transitions",
    ["status"],  # completed, expired, cancelled
)

payment_code_collisions_total = Counter(
    "paycode_payment_code_collisions_total",
    "Payment code draws that hit a pending order",
)

# Settlement metrics
settlements_total = Counter(
    "paycode_settlements_total",
    "Settlement attempts by outcome",
    ["outcome"],  # completed or the error code
)

settlement_duration_seconds = Histogram(
    "paycode_settlement_duration_seconds",
    "Settlement duration in seconds, lock wait included",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

settlement_amount_cents = Histogram(
    "paycode_settlement_amount_cents",
    "Settled amounts in cents",
    buckets=AMOUNT_BUCKETS,
)

# Recharge and refund metrics
recharges_total = Counter(
    "paycode_recharges_total",
    "Recharge attempts by outcome",
    ["outcome"],
)

recharge_amount_cents = Histogram(
    "paycode_recharge_amount_cents",
    "Recharged amounts in cents",
    buckets=AMOUNT_BUCKETS,
)

refunds_total = Counter(
    "paycode_refunds_total",
    "Refund attempts by outcome",
    ["outcome"],
)

# Concurrency metrics
conflict_retries_total = Counter(
    "paycode_conflict_retries_total",
    "Atomic units retried after losing a storage race",
    ["operation"],
)

lock_acquisitions_total = Counter(
    "paycode_lock_acquisitions_total",
    "Per-key lock acquisitions",
    ["status"],  # acquired, timeout
)

lock_wait_seconds = Histogram(
    "paycode_lock_wait_seconds",
    "Time spent waiting for a per-key lock",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# Reconciliation metrics
reconciliation_discrepancies = Gauge(
    "paycode_reconciliation_discrepancies",
    "Accounts whose balance disagrees with the ledger",
)

reconciliation_duration_seconds = Histogram(
    "paycode_reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "paycode_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created() -> None:
        """Record a new pending order."""
        orders_created_total.inc()

    @staticmethod
    def record_order_transition(status: str) -> None:
        """Record an order leaving pending."""
        order_transitions_total.labels(status=status).inc()

    @staticmethod
    def record_code_collision() -> None:
        payment_code_collisions_total.inc()

    @staticmethod
    def record_settlement(outcome: str, duration_seconds: float, amount_cents: int = 0) -> None:
        """Record a settlement attempt."""
        settlements_total.labels(outcome=outcome).inc()
        settlement_duration_seconds.observe(duration_seconds)
        if amount_cents > 0:
            settlement_amount_cents.observe(amount_cents)

    @staticmethod
    def record_recharge(outcome: str, amount_cents: int = 0) -> None:
        """Record a recharge attempt."""
        recharges_total.labels(outcome=outcome).inc()
        if amount_cents > 0:
            recharge_amount_cents.observe(amount_cents)

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_conflict_retry(operation: str) -> None:
        conflict_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_lock(status: str, wait_seconds: float = 0) -> None:
        """Record per-key lock acquisition."""
        lock_acquisitions_total.labels(status=status).inc()
        if wait_seconds > 0:
            lock_wait_seconds.observe(wait_seconds)

    @staticmethod
    def set_reconciliation_metrics(discrepancies_count: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies.set(discrepancies_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
