"""Prometheus metrics for the controller.

All collectors live in the default registry so ``/metrics`` can expose them
with ``prometheus_client.generate_latest()``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

reconciliations_total = Counter(
    "kubestack_reconciliations_total",
    "Stack reconciliation passes by outcome.",
    ["result"],
)

reconcile_duration_seconds = Histogram(
    "kubestack_reconcile_duration_seconds",
    "Wall-clock duration of a single stack reconciliation pass.",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

queue_depth = Gauge(
    "kubestack_queue_depth",
    "Number of distinct keys pending in a work queue.",
    ["queue"],
)

watch_events_total = Counter(
    "kubestack_watch_events_total",
    "Watch notifications received, by kind and event type.",
    ["kind", "type"],
)

watch_restarts_total = Counter(
    "kubestack_watch_restarts_total",
    "Watch streams restarted after an error or expiry.",
    ["kind", "reason"],
)

cluster_writes_total = Counter(
    "kubestack_cluster_writes_total",
    "Write calls issued against the API server.",
    ["kind", "verb"],
)

retries_scheduled_total = Counter(
    "kubestack_retries_scheduled_total",
    "Stack keys re-queued after a retryable failure.",
)
