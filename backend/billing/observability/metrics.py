"""Prometheus metrics helpers for billing and round-up donation flows."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

PAYMENT_INTENT_COUNT = Counter(
    "billing_payment_intent_total",
    "Payment intents requested from Stripe",
    labelnames=("donation_type", "status"),
)

PAYMENT_INTENT_LATENCY = Histogram(
    "billing_payment_intent_duration_seconds",
    "Latency of Stripe payment intent creation",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_event_total",
    "Stripe webhook events processed",
    labelnames=("event_type", "status"),
)

WEBHOOK_BACKLOG = Counter(
    "billing_webhook_dead_letter_total",
    "Total dead-lettered Stripe webhook events",
    labelnames=("event_type",),
)

ROUNDUP_TRANSACTIONS_APPLIED = Counter(
    "roundup_transactions_applied_total",
    "Bank transactions handled by the accumulation ledger",
    labelnames=("result",),
)

ROUNDUP_DONATIONS_TRIGGERED = Counter(
    "roundup_donations_triggered_total",
    "Donation triggers handled by the orchestrator",
    labelnames=("trigger", "outcome"),
)

ROUNDUP_DONATIONS_SETTLED = Counter(
    "roundup_donations_settled_total",
    "Donations settled from payment intent outcomes",
    labelnames=("outcome",),
)

ROUNDUP_JOB_RUNS = Counter(
    "roundup_job_runs_total",
    "Scheduled job executions by outcome",
    labelnames=("job", "status"),
)

ROUNDUP_JOB_DURATION = Histogram(
    "roundup_job_duration_seconds",
    "Wall-clock duration of scheduled job executions",
    labelnames=("job",),
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)
