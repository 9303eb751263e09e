"""Prometheus metric definitions and helpers for the billing engine."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Histogram


TRANSACTIONS_TOTAL = Counter(
    "billing_transactions_total",
    "Total number of ledger transactions partitioned by type and final status.",
    ["type", "status"],
)

GATEWAY_RETRIES_TOTAL = Counter(
    "billing_gateway_retries_total",
    "Total number of retried payment gateway calls partitioned by operation.",
    ["operation"],
)

SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "billing_subscription_transitions_total",
    "Total number of subscription state transitions partitioned by transition.",
    ["transition"],
)

SWEEP_OUTCOMES_TOTAL = Counter(
    "billing_sweep_outcomes_total",
    "Total number of renewal sweep outcomes partitioned by action.",
    ["action"],
)

SWEEP_DURATION_SECONDS = Histogram(
    "billing_sweep_duration_seconds",
    "Histogram of renewal sweep execution time in seconds.",
)

NOTIFICATIONS_TOTAL = Counter(
    "billing_notifications_total",
    "Total number of billing notifications emitted partitioned by kind.",
    ["kind"],
)


def record_transaction(transaction_type: str, status: str) -> None:
    """Increment the ledger transaction counter."""

    TRANSACTIONS_TOTAL.labels(type=transaction_type, status=status).inc()


def record_gateway_retry(operation: str) -> None:
    GATEWAY_RETRIES_TOTAL.labels(operation=operation).inc()


def record_transition(transition: str) -> None:
    """Increment counters for subscription lifecycle transitions."""

    SUBSCRIPTION_TRANSITIONS_TOTAL.labels(transition=transition).inc()


def record_sweep_outcome(action: str) -> None:
    SWEEP_OUTCOMES_TOTAL.labels(action=action).inc()


def record_sweep_duration(duration_seconds: Optional[float]) -> None:
    if duration_seconds is not None:
        SWEEP_DURATION_SECONDS.observe(duration_seconds)


def record_notification(kind: str) -> None:
    NOTIFICATIONS_TOTAL.labels(kind=kind).inc()
