"""Prometheus metrics helpers for the billing core."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

TRANSITION_COUNT = Counter(
    "billing_transition_total",
    "Subscription lifecycle entry points by outcome",
    labelnames=("transition", "outcome"),
)

GATEWAY_CALL_COUNT = Counter(
    "billing_gateway_call_total",
    "Payment gateway calls by outcome",
    labelnames=("operation", "outcome"),
)

GATEWAY_CALL_LATENCY = Histogram(
    "billing_gateway_call_duration_seconds",
    "Latency of payment gateway calls",
    labelnames=("operation",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

PARTIAL_FAILURE_COUNT = Counter(
    "billing_partial_failure_total",
    "Charges that failed after a refund already succeeded",
    labelnames=("operation",),
)

NOTIFICATION_FAILURE_COUNT = Counter(
    "billing_notification_failure_total",
    "Notification webhook deliveries that failed",
    labelnames=("event",),
)
