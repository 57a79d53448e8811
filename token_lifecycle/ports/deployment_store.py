"""DeploymentRecordStore - Deployment persistence interface.

Hard dependency of the status service. Holds the current record of each
deployment plus its append-only status history.
Day-1 implementation: in-memory (InMemoryDeploymentStore).
Durable implementation: SQLAlchemy async (SqlDeploymentStore).

The status service serialises writes per deployment id within one process.
Across processes, writes carry the status the caller read; implementations
apply them only if the stored status still matches (compare-and-set).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from token_lifecycle.shared.types import (
        DeploymentFilter,
        DeploymentStatus,
        DeploymentStatusEntry,
        TokenDeployment,
    )


class DeploymentRecordStore(ABC):
    """Port: deployment record + history persistence."""

    @abstractmethod
    async def create(
        self,
        deployment: TokenDeployment,
        initial_entry: DeploymentStatusEntry,
    ) -> None:
        """Persist a new deployment together with its first history entry.

        Raises:
            ConflictError: If the deployment id already exists.
        """

    @abstractmethod
    async def get(self, deployment_id: str) -> TokenDeployment | None:
        """Return the current record, or None if unknown."""

    @abstractmethod
    async def update(
        self,
        deployment: TokenDeployment,
        *,
        expected_status: DeploymentStatus | None = None,
    ) -> None:
        """Replace the current record without touching history.

        Used for side-channel fields such as the asset identifier. With
        expected_status the write only applies if the stored status matches.

        Raises:
            NotFoundError: If the deployment id is unknown.
            ConflictError: If the stored status differs from expected_status.
        """

    @abstractmethod
    async def save_transition(
        self,
        deployment: TokenDeployment,
        entry: DeploymentStatusEntry,
        *,
        expected_status: DeploymentStatus,
    ) -> None:
        """Append a history entry and write the new current record atomically.

        `deployment.current_status` must equal `entry.status`; expected_status
        is the status the transition was validated from.

        Raises:
            NotFoundError: If the deployment id is unknown.
            ConflictError: If the stored status is no longer expected_status
                (code CONCURRENT_MODIFICATION); nothing is written.
        """

    @abstractmethod
    async def get_history(self, deployment_id: str) -> list[DeploymentStatusEntry]:
        """Return history entries in the order they were appended.

        Unknown ids return an empty list.
        """

    @abstractmethod
    async def list(self, query: DeploymentFilter) -> list[TokenDeployment]:
        """Return one page of matching deployments, newest first."""

    @abstractmethod
    async def count(self, query: DeploymentFilter) -> int:
        """Return the number of deployments matching the filter (ignores paging)."""
