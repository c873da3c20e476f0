"""Prometheus metrics for plan execution."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

steps_total = Counter(
    "kubeplan_steps_total",
    "Plan steps finished, by action and final status.",
    ["action", "status"],
)

step_duration_seconds = Histogram(
    "kubeplan_step_duration_seconds",
    "Duration of collaborator calls on the executor clock, by node kind.",
    ["kind"],
    buckets=(0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600),
)

retries_total = Counter(
    "kubeplan_retries_total",
    "Retries of transient collaborator failures, by node kind.",
    ["kind"],
)

timeouts_total = Counter(
    "kubeplan_timeouts_total",
    "Collaborator calls cancelled after exceeding the node timeout.",
    ["kind"],
)

barrier_wait_seconds_total = Counter(
    "kubeplan_barrier_wait_seconds_total",
    "Seconds spent waiting on timed barriers during destroy.",
)

inflight_steps = Gauge(
    "kubeplan_inflight_steps",
    "Plan steps currently running.",
)
