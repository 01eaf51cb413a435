"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter

WEBHOOK_RECEIVED_COUNT = Counter(
    "billing_webhook_received_total",
    "Stripe webhook deliveries by verification outcome",
    labelnames=("outcome",),
)

RECONCILIATION_COUNT = Counter(
    "billing_reconciliation_total",
    "Reconciled Stripe events by route and result status",
    labelnames=("route", "status"),
)

CREDIT_MUTATION_COUNT = Counter(
    "billing_credit_mutation_total",
    "Credit ledger mutations applied",
    labelnames=("kind",),
)

CREDIT_MUTATION_AMOUNT = Counter(
    "billing_credit_mutation_amount_total",
    "Absolute credits moved by ledger mutations",
    labelnames=("kind",),
)

WEBHOOK_BACKLOG = Counter(
    "billing_webhook_dead_letter_total",
    "Total dead-lettered Stripe webhook events",
    labelnames=("event_type",),
)
