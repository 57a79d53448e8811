"""In-memory DeploymentRecordStore.

Reference implementation for tests and single-process use. Records are frozen
dataclasses; history entries are copied on the way in and out so callers can
never alter stored metadata.
"""

from __future__ import annotations

import dataclasses
import itertools
from typing import TYPE_CHECKING

from token_lifecycle.ports.deployment_store import DeploymentRecordStore
from token_lifecycle.shared.errors import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
)

if TYPE_CHECKING:
    from token_lifecycle.shared.types import (
        DeploymentFilter,
        DeploymentStatus,
        DeploymentStatusEntry,
        TokenDeployment,
    )


def _copy_entry(entry: DeploymentStatusEntry) -> DeploymentStatusEntry:
    return dataclasses.replace(entry, metadata=dict(entry.metadata))


class InMemoryDeploymentStore(DeploymentRecordStore):
    """Dict-backed store keeping insertion order for history and listing."""

    def __init__(self) -> None:
        self._deployments: dict[str, TokenDeployment] = {}
        self._history: dict[str, list[DeploymentStatusEntry]] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()

    async def create(
        self,
        deployment: TokenDeployment,
        initial_entry: DeploymentStatusEntry,
    ) -> None:
        deployment_id = deployment.deployment_id
        if deployment_id in self._deployments:
            msg = f"Deployment already exists: {deployment_id}"
            raise ConflictError(msg, code="ALREADY_EXISTS")
        self._deployments[deployment_id] = deployment
        self._history[deployment_id] = [_copy_entry(initial_entry)]
        self._sequence[deployment_id] = next(self._counter)

    async def get(self, deployment_id: str) -> TokenDeployment | None:
        return self._deployments.get(deployment_id)

    async def update(
        self,
        deployment: TokenDeployment,
        *,
        expected_status: DeploymentStatus | None = None,
    ) -> None:
        self._check_current(deployment.deployment_id, expected_status)
        self._deployments[deployment.deployment_id] = deployment

    async def save_transition(
        self,
        deployment: TokenDeployment,
        entry: DeploymentStatusEntry,
        *,
        expected_status: DeploymentStatus,
    ) -> None:
        deployment_id = deployment.deployment_id
        self._check_current(deployment_id, expected_status)
        # No await between the two writes: history and current never diverge
        self._history[deployment_id].append(_copy_entry(entry))
        self._deployments[deployment_id] = deployment

    async def get_history(self, deployment_id: str) -> list[DeploymentStatusEntry]:
        return [_copy_entry(e) for e in self._history.get(deployment_id, [])]

    async def list(self, query: DeploymentFilter) -> list[TokenDeployment]:
        matched = self._matching(query)
        return matched[query.offset : query.offset + query.page_size]

    async def count(self, query: DeploymentFilter) -> int:
        return len(self._matching(query))

    def _matching(self, query: DeploymentFilter) -> list[TokenDeployment]:
        matched = [d for d in self._deployments.values() if query.matches(d)]
        matched.sort(
            key=lambda d: (d.created_at, self._sequence[d.deployment_id]),
            reverse=True,
        )
        return matched

    def _check_current(
        self,
        deployment_id: str,
        expected_status: DeploymentStatus | None,
    ) -> None:
        stored = self._deployments.get(deployment_id)
        if stored is None:
            raise NotFoundError("Deployment", deployment_id)
        if expected_status is not None and stored.current_status != expected_status:
            raise ConcurrentModificationError(
                deployment_id,
                expected_status.value,
                stored.current_status.value,
            )
