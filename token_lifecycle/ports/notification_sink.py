"""NotificationSink - Status change notification interface.

Soft dependency. The status service emits one event per accepted status
change; delivery (webhooks, retries, dedup) belongs to the sink.
Implementation: OutboxNotificationSink (at-least-once via EventOutbox).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from token_lifecycle.shared.types import DeploymentStatus


class NotificationSink(ABC):
    """Port: fire-and-forget status change events."""

    @abstractmethod
    async def emit_event(
        self,
        deployment_id: str,
        from_status: DeploymentStatus | None,
        to_status: DeploymentStatus,
        reason_code: str,
    ) -> None:
        """Hand a status change to the sink.

        Args:
            deployment_id: Deployment whose status changed.
            from_status: Previous status (None when the deployment was created).
            to_status: New status.
            reason_code: Guard reason code for the transition.
        """
