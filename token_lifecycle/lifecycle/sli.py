"""Deployment lifecycle SLI metrics for Prometheus.

5 SLI metrics:
1. lifecycle_deployments_created_total            - Deployments queued
2. lifecycle_transitions_total (from, to)         - Accepted status changes
3. lifecycle_transition_rejections_total (reason) - Guard rejections
4. lifecycle_notification_failures_total          - Sink errors swallowed
5. lifecycle_status_update_duration_seconds       - update_status latency
"""

from __future__ import annotations

import time
from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram

# Latency buckets: 1ms to 5s (store round-trip dominated)
_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


def _histogram(
    name: str,
    documentation: str,
    registry: CollectorRegistry | None,
) -> Histogram:
    if registry is not None:
        return Histogram(name, documentation, buckets=_LATENCY_BUCKETS, registry=registry)
    return Histogram(name, documentation, buckets=_LATENCY_BUCKETS)


def _counter(
    name: str,
    documentation: str,
    labelnames: list[str],
    registry: CollectorRegistry | None,
) -> Counter:
    if registry is not None:
        return Counter(name, documentation, labelnames, registry=registry)
    return Counter(name, documentation, labelnames)


class LifecycleSLI:
    """Central registry for deployment lifecycle SLI metrics.

    Pass a custom CollectorRegistry for testing isolation.
    In production, use the default global registry (registry=None).
    """

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self.deployments_created = _counter(
            "lifecycle_deployments_created_total",
            "Deployments queued",
            ["network"],
            registry,
        )

        self.transitions = _counter(
            "lifecycle_transitions_total",
            "Accepted deployment status transitions",
            ["from_status", "to_status"],
            registry,
        )

        self.rejections = _counter(
            "lifecycle_transition_rejections_total",
            "Status transitions rejected by the guard",
            ["reason_code"],
            registry,
        )

        self.notification_failures = _counter(
            "lifecycle_notification_failures_total",
            "Notification sink errors (transition kept)",
            ["to_status"],
            registry,
        )

        self.status_update_duration = _histogram(
            "lifecycle_status_update_duration_seconds",
            "Time spent in a status update (lock + guard + store)",
            registry,
        )

    @contextmanager
    def timer(self, histogram: Histogram) -> Generator[None, None, None]:
        """Observe elapsed time on a histogram, even if the block raises."""
        start = time.monotonic()
        try:
            yield
        finally:
            histogram.observe(time.monotonic() - start)
