"""Deployment metrics read model.

Aggregates outcomes and durations over a window of deployments:
- counts by outcome, success / failure rate (percent)
- end-to-end duration stats for COMPLETED deployments (avg, median, p95, min, max)
- average duration per transition ("queued->submitted")
- failures by errorCategory (from the first FAILED history entry)
- retried deployments (a QUEUED entry after a FAILED one)
- counts by network and token standard

Window defaults to the last 24 hours.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from token_lifecycle.shared.types import DeploymentFilter, DeploymentStatus, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from token_lifecycle.ports.deployment_store import DeploymentRecordStore
    from token_lifecycle.shared.types import DeploymentStatusEntry, TokenDeployment

DEFAULT_WINDOW = timedelta(days=1)
_PAGE_SIZE = 100

_FINISHED = frozenset(
    {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
)


@dataclass(frozen=True)
class DeploymentMetrics:
    period_start: datetime
    period_end: datetime
    total_deployments: int = 0
    successful_deployments: int = 0
    failed_deployments: int = 0
    pending_deployments: int = 0
    cancelled_deployments: int = 0
    success_rate: float = 0.0
    failure_rate: float = 0.0
    average_duration_ms: int = 0
    median_duration_ms: int = 0
    p95_duration_ms: int = 0
    fastest_duration_ms: int = 0
    slowest_duration_ms: int = 0
    failures_by_category: dict[str, int] = field(default_factory=dict)
    deployments_by_network: dict[str, int] = field(default_factory=dict)
    deployments_by_token_standard: dict[str, int] = field(default_factory=dict)
    average_duration_by_transition: dict[str, int] = field(default_factory=dict)
    retried_deployments: int = 0
    calculated_at: datetime = field(default_factory=utcnow)


def _ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def median(values: list[int]) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) // 2
    return ordered[mid]


def percentile(values: list[int], pct: int) -> int:
    """Nearest-rank percentile."""
    if not values:
        return 0
    ordered = sorted(values)
    index = math.ceil(pct / 100 * len(ordered)) - 1
    return ordered[max(0, min(index, len(ordered) - 1))]


def _was_retried(history: list[DeploymentStatusEntry]) -> bool:
    seen_failure = False
    for entry in history:
        if entry.status == DeploymentStatus.FAILED:
            seen_failure = True
        elif entry.status == DeploymentStatus.QUEUED and seen_failure:
            return True
    return False


def calculate_deployment_metrics(
    deployments: list[TokenDeployment],
    histories: dict[str, list[DeploymentStatusEntry]],
    *,
    period_start: datetime,
    period_end: datetime,
) -> DeploymentMetrics:
    """Compute metrics from deployments and their histories (history in append order)."""
    total = len(deployments)
    successful = sum(1 for d in deployments if d.current_status == DeploymentStatus.COMPLETED)
    failed = sum(1 for d in deployments if d.current_status == DeploymentStatus.FAILED)
    cancelled = sum(1 for d in deployments if d.current_status == DeploymentStatus.CANCELLED)
    pending = sum(1 for d in deployments if d.current_status not in _FINISHED)

    durations: list[int] = []
    by_transition: dict[str, list[int]] = {}
    failures_by_category: dict[str, int] = {}
    by_network: dict[str, int] = {}
    by_standard: dict[str, int] = {}
    retried = 0

    for deployment in deployments:
        history = histories.get(deployment.deployment_id, [])
        by_network[deployment.network] = by_network.get(deployment.network, 0) + 1
        by_standard[deployment.token_standard] = by_standard.get(deployment.token_standard, 0) + 1

        if _was_retried(history):
            retried += 1

        if deployment.current_status == DeploymentStatus.COMPLETED and len(history) >= 2:
            durations.append(_ms(history[0].timestamp, history[-1].timestamp))
            for prev, curr in zip(history, history[1:], strict=False):
                key = f"{prev.status.value}->{curr.status.value}"
                by_transition.setdefault(key, []).append(_ms(prev.timestamp, curr.timestamp))

        if deployment.current_status == DeploymentStatus.FAILED:
            failed_entry = next((e for e in history if e.status == DeploymentStatus.FAILED), None)
            if failed_entry is not None and "errorCategory" in failed_entry.metadata:
                category = str(failed_entry.metadata["errorCategory"] or "unknown")
                failures_by_category[category] = failures_by_category.get(category, 0) + 1

    return DeploymentMetrics(
        period_start=period_start,
        period_end=period_end,
        total_deployments=total,
        successful_deployments=successful,
        failed_deployments=failed,
        pending_deployments=pending,
        cancelled_deployments=cancelled,
        success_rate=successful / total * 100 if total else 0.0,
        failure_rate=failed / total * 100 if total else 0.0,
        average_duration_ms=int(sum(durations) / len(durations)) if durations else 0,
        median_duration_ms=median(durations),
        p95_duration_ms=percentile(durations, 95),
        fastest_duration_ms=min(durations, default=0),
        slowest_duration_ms=max(durations, default=0),
        failures_by_category=failures_by_category,
        deployments_by_network=by_network,
        deployments_by_token_standard=by_standard,
        average_duration_by_transition={
            key: int(sum(values) / len(values)) for key, values in by_transition.items()
        },
        retried_deployments=retried,
    )


async def collect_deployment_metrics(
    store: DeploymentRecordStore,
    *,
    network: str | None = None,
    token_standard: str | None = None,
    deployed_by: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> DeploymentMetrics:
    """Page through the store and compute metrics for the window."""
    period_end = to_date or utcnow()
    period_start = from_date or period_end - DEFAULT_WINDOW

    deployments: list[TokenDeployment] = []
    page = 1
    while True:
        batch = await store.list(
            DeploymentFilter(
                network=network,
                token_standard=token_standard,
                deployed_by=deployed_by,
                from_date=period_start,
                to_date=period_end,
                page=page,
                page_size=_PAGE_SIZE,
            )
        )
        deployments.extend(batch)
        if len(batch) < _PAGE_SIZE:
            break
        page += 1

    histories = {d.deployment_id: await store.get_history(d.deployment_id) for d in deployments}
    return calculate_deployment_metrics(
        deployments,
        histories,
        period_start=period_start,
        period_end=period_end,
    )
