"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

BILLING_REQUEST_COUNT = Counter(
    "billing_request_total",
    "Number of billing API requests",
    labelnames=("endpoint", "method", "status"),
)

BILLING_REQUEST_LATENCY = Histogram(
    "billing_request_duration_seconds",
    "Latency of billing API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

PAYMENT_RECORDED_COUNT = Counter(
    "billing_payment_recorded_total",
    "Payments written to the ledger",
    labelnames=("status", "source"),
)

PAYMENT_DUPLICATE_COUNT = Counter(
    "billing_payment_duplicate_total",
    "Payment ingestions that matched an existing payment intent",
    labelnames=("source",),
)

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_event_total",
    "Provider webhook events by type and outcome",
    labelnames=("event_type", "outcome"),
)

SUBSCRIPTION_TRANSITION_COUNT = Counter(
    "billing_subscription_transition_total",
    "Subscription state machine transitions",
    labelnames=("kind",),
)
