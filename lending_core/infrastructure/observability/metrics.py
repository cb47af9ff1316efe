"""Prometheus metrics for monitoring loan transitions, disbursements, outbox volume and scores"""

from prometheus_client import Counter, Histogram

# Lifecycle metrics
transition_counter = Counter(
    "lending_loan_transition_total",
    "Loan state transitions attempted",
    ["transition", "outcome"],  # outcome: committed | invalid_transition | guard_failed | conflict | error
)

# Disbursement gateway metrics
gateway_latency_histogram = Histogram(
    "disbursement_gateway_latency_seconds",
    "Disbursement gateway response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "disbursement_gateway_failures_total",
    "Failed disbursement gateway calls",
)

# Idempotency metrics
idempotency_counter = Counter(
    "lending_idempotency_reservations_total",
    "Idempotency reservations by result",
    ["scope", "result"],  # created | replayed | conflict
)

# Outbox metrics
outbox_published_counter = Counter(
    "lending_outbox_events_published_total",
    "Outbox events written (visible once the surrounding transaction commits)",
    ["name"],
)

# Scoring metrics
credit_score_histogram = Histogram(
    "lending_credit_score",
    "Computed credit scores",
    buckets=[300, 400, 500, 550, 600, 650, 700, 800, 900],
)


def record_transition(transition: str, outcome: str) -> None:
    """Record the outcome of a lifecycle operation"""
    transition_counter.labels(transition=transition, outcome=outcome).inc()
