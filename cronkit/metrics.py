"""Prometheus instrumentation for leases, enqueues and batch processing."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


lock_acquisitions = Counter(
    "cronkit_lock_acquisitions_total",
    "Lease acquisition attempts by outcome (acquired, contended, error).",
    ["outcome"],
)

lock_hold_seconds = Histogram(
    "cronkit_lock_hold_seconds",
    "Time between a successful acquisition and its release.",
)

lock_release_failures = Counter(
    "cronkit_lock_release_failures_total",
    "Lease releases that raised; the lease is left to expire.",
)

enqueue_total = Counter(
    "cronkit_enqueue_total",
    "Enqueue requests by outcome (created, deduplicated, error).",
    ["outcome"],
)

claim_conflicts = Counter(
    "cronkit_claim_conflicts_total",
    "Pending items lost to a concurrent claimer between select and update.",
)

items_completed = Counter(
    "cronkit_items_completed_total",
    "Work items moved to a terminal status, by outcome.",
    ["outcome"],
)

batch_duration = Histogram(
    "cronkit_batch_duration_seconds",
    "Wall-clock duration of one batch worker pass.",
)
