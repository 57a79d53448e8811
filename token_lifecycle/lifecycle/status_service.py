"""DeploymentStatusService - owns the lifecycle of deployment records.

- Every status change goes through the StateTransitionGuard
- read -> guard -> append history -> write current runs under a per-id lock
- Idempotent repeats are accepted without growing history or notifying
- NotificationSink failures are logged and counted, never rolled back
- Store faults propagate to the caller; a write whose expected status no
  longer matches (another process moved the record) raises ConflictError

Business-rule outcomes (not found, rejected, idempotent) are returned as
StatusUpdateResult; only infrastructure faults raise.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from token_lifecycle.lifecycle.guard import StateTransitionGuard
from token_lifecycle.lifecycle.locks import KeyedAsyncLock
from token_lifecycle.shared.errors import ValidationError
from token_lifecycle.shared.logging.error_handler import log_structured_error
from token_lifecycle.shared.trace_context import get_correlation_id
from token_lifecycle.shared.types import (
    DeploymentFilter,
    DeploymentPage,
    DeploymentStatus,
    DeploymentStatusEntry,
    StatusUpdateResult,
    TokenDeployment,
    utcnow,
)

if TYPE_CHECKING:
    from datetime import datetime

    from token_lifecycle.lifecycle.sli import LifecycleSLI
    from token_lifecycle.ports.deployment_store import DeploymentRecordStore
    from token_lifecycle.ports.notification_sink import NotificationSink
    from token_lifecycle.shared.types import DeploymentError

logger = logging.getLogger(__name__)

DEPLOYMENT_CREATED = "DEPLOYMENT_CREATED"
DEPLOYMENT_NOT_FOUND = "DEPLOYMENT_NOT_FOUND"


def _not_found(deployment_id: str) -> StatusUpdateResult:
    return StatusUpdateResult(
        accepted=False,
        reason_code=DEPLOYMENT_NOT_FOUND,
        explanation=f"Deployment {deployment_id} not found",
        not_found=True,
    )


def _elapsed_ms(history: list[DeploymentStatusEntry], now: datetime) -> int | None:
    if not history:
        return None
    return int((now - history[-1].timestamp).total_seconds() * 1000)


class DeploymentStatusService:
    """Orchestrates deployment status changes.

    Args:
        store: Record store (hard dependency).
        sink: Optional notification sink; None disables notifications.
        guard: Transition guard; defaults to StateTransitionGuard().
        sli: Optional LifecycleSLI for Prometheus metrics.
        locks: Per-id lock table; share one between services on the same store.
    """

    def __init__(
        self,
        store: DeploymentRecordStore,
        *,
        sink: NotificationSink | None = None,
        guard: StateTransitionGuard | None = None,
        sli: LifecycleSLI | None = None,
        locks: KeyedAsyncLock | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._guard = guard or StateTransitionGuard()
        self._sli = sli
        self._locks = locks or KeyedAsyncLock()

    # -- Commands --

    async def create_deployment(
        self,
        token_standard: str,
        network: str,
        correlation_id: str | None = None,
        asset_name: str | None = None,
        asset_symbol: str | None = None,
        *,
        deployed_by: str | None = None,
    ) -> str:
        """Create a deployment in QUEUED with its initial history entry.

        Returns:
            The new deployment id.

        Raises:
            ValidationError: If token_standard or network is blank.
        """
        if not token_standard or not token_standard.strip():
            raise ValidationError("token_standard is required", field="token_standard")
        if not network or not network.strip():
            raise ValidationError("network is required", field="network")

        deployment_id = str(uuid4())
        now = utcnow()
        deployment = TokenDeployment(
            deployment_id=deployment_id,
            token_standard=token_standard,
            network=network,
            current_status=DeploymentStatus.QUEUED,
            asset_name=asset_name,
            asset_symbol=asset_symbol,
            deployed_by=deployed_by,
            correlation_id=correlation_id or get_correlation_id() or str(uuid4()),
            created_at=now,
            updated_at=now,
        )
        entry = DeploymentStatusEntry(
            deployment_id=deployment_id,
            status=DeploymentStatus.QUEUED,
            message="Deployment request queued for processing",
            reason_code=DEPLOYMENT_CREATED,
            timestamp=now,
        )

        async with self._locks.hold(deployment_id):
            await self._store.create(deployment, entry)
            await self._notify(deployment_id, None, DeploymentStatus.QUEUED, DEPLOYMENT_CREATED)

        if self._sli is not None:
            self._sli.deployments_created.labels(network=network).inc()
        logger.info(
            "Deployment created: id=%s standard=%s network=%s correlation_id=%s",
            deployment_id,
            token_standard,
            network,
            deployment.correlation_id,
        )
        return deployment_id

    async def update_status(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        message: str | None = None,
        transaction_hash: str | None = None,
        confirmed_round: int | None = None,
        *,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StatusUpdateResult:
        """Request a status change.

        Supplied transaction_hash / confirmed_round / error_message are applied
        to the record before the guard runs, so a hash given together with
        SUBMITTED satisfies the SUBMITTED invariant.
        """
        if self._sli is None:
            return await self._update_status(
                deployment_id,
                new_status,
                message,
                transaction_hash,
                confirmed_round,
                error_message,
                metadata,
            )
        with self._sli.timer(self._sli.status_update_duration):
            return await self._update_status(
                deployment_id,
                new_status,
                message,
                transaction_hash,
                confirmed_round,
                error_message,
                metadata,
            )

    async def _update_status(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        message: str | None,
        transaction_hash: str | None,
        confirmed_round: int | None,
        error_message: str | None,
        metadata: dict[str, Any] | None,
    ) -> StatusUpdateResult:
        async with self._locks.hold(deployment_id):
            current = await self._store.get(deployment_id)
            if current is None:
                logger.warning("Status update for unknown deployment: id=%s", deployment_id)
                return _not_found(deployment_id)

            changes: dict[str, Any] = {}
            if transaction_hash is not None:
                changes["transaction_hash"] = transaction_hash
            if confirmed_round is not None:
                changes["confirmed_round"] = confirmed_round
            if error_message is not None:
                changes["error_message"] = error_message
            previous = current.current_status
            if (
                previous == DeploymentStatus.FAILED
                and new_status == DeploymentStatus.QUEUED
                and error_message is None
            ):
                # A re-queued deployment starts without the previous failure
                changes["error_message"] = None
            candidate = dataclasses.replace(current, **changes) if changes else current

            validation = self._guard.validate_transition(previous, new_status, candidate)

            if not validation.is_allowed:
                if self._sli is not None:
                    self._sli.rejections.labels(reason_code=validation.reason_code).inc()
                logger.warning(
                    "Status transition rejected: id=%s %s -> %s reason=%s",
                    deployment_id,
                    previous.value,
                    new_status.value,
                    validation.reason_code,
                )
                return StatusUpdateResult(
                    accepted=False,
                    reason_code=validation.reason_code,
                    explanation=validation.explanation,
                    deployment=current,
                    validation=validation,
                )

            now = utcnow()

            if previous == new_status:
                # Field changes are still written; history and sink are untouched
                if changes:
                    candidate = dataclasses.replace(candidate, updated_at=now)
                    await self._store.update(candidate, expected_status=previous)
                logger.debug(
                    "Idempotent status update: id=%s status=%s", deployment_id, previous.value
                )
                return StatusUpdateResult(
                    accepted=True,
                    reason_code=validation.reason_code,
                    explanation=validation.explanation,
                    deployment=candidate,
                    validation=validation,
                    idempotent=True,
                )

            history = await self._store.get_history(deployment_id)
            updated = dataclasses.replace(candidate, current_status=new_status, updated_at=now)
            entry = DeploymentStatusEntry(
                deployment_id=deployment_id,
                status=new_status,
                message=message,
                reason_code=validation.reason_code,
                metadata=dict(metadata or {}),
                transaction_hash=transaction_hash,
                confirmed_round=confirmed_round,
                error_message=error_message,
                duration_from_previous_ms=_elapsed_ms(history, now),
                timestamp=now,
            )
            await self._store.save_transition(updated, entry, expected_status=previous)

            if self._sli is not None:
                self._sli.transitions.labels(
                    from_status=previous.value,
                    to_status=new_status.value,
                ).inc()
            logger.info(
                "Deployment status updated: id=%s %s -> %s reason=%s",
                deployment_id,
                previous.value,
                new_status.value,
                validation.reason_code,
            )

            await self._notify(deployment_id, previous, new_status, validation.reason_code)

        return StatusUpdateResult(
            accepted=True,
            reason_code=validation.reason_code,
            explanation=validation.explanation,
            deployment=updated,
            validation=validation,
        )

    async def update_asset_identifier(self, deployment_id: str, asset_identifier: str) -> bool:
        """Set the on-chain asset identifier without a status transition.

        Returns False if the deployment is unknown.
        """
        async with self._locks.hold(deployment_id):
            current = await self._store.get(deployment_id)
            if current is None:
                logger.warning(
                    "Asset identifier update for unknown deployment: id=%s", deployment_id
                )
                return False
            updated = dataclasses.replace(
                current, asset_identifier=asset_identifier, updated_at=utcnow()
            )
            await self._store.update(updated, expected_status=current.current_status)
        logger.info("Asset identifier updated: id=%s asset=%s", deployment_id, asset_identifier)
        return True

    async def mark_failed(
        self,
        deployment_id: str,
        error_message: str,
        is_retryable: bool = False,
    ) -> StatusUpdateResult:
        """Request FAILED, recording isRetryable in the history entry metadata."""
        return await self.update_status(
            deployment_id,
            DeploymentStatus.FAILED,
            "Deployment failed - retry possible" if is_retryable else "Deployment failed",
            error_message=error_message,
            metadata={"isRetryable": is_retryable},
        )

    async def mark_failed_with_error(
        self,
        deployment_id: str,
        error: DeploymentError,
    ) -> StatusUpdateResult:
        """Request FAILED from a structured DeploymentError."""
        metadata: dict[str, Any] = {
            "isRetryable": error.is_retryable,
            "errorCategory": error.category.value,
            "errorCode": error.error_code,
        }
        if error.suggested_retry_delay_seconds is not None:
            metadata["suggestedRetryDelaySeconds"] = error.suggested_retry_delay_seconds
        return await self.update_status(
            deployment_id,
            DeploymentStatus.FAILED,
            error.user_message,
            error_message=error.technical_message,
            metadata=metadata,
        )

    async def cancel_deployment(self, deployment_id: str, reason: str) -> StatusUpdateResult:
        """Request CANCELLED. Only legal from QUEUED."""
        return await self.update_status(
            deployment_id,
            DeploymentStatus.CANCELLED,
            f"Cancelled by user: {reason}",
            metadata={"reason": reason},
        )

    # -- Queries --

    async def get_deployment(self, deployment_id: str) -> TokenDeployment | None:
        return await self._store.get(deployment_id)

    async def get_status_history(self, deployment_id: str) -> list[DeploymentStatusEntry]:
        return await self._store.get_history(deployment_id)

    async def list_deployments(self, query: DeploymentFilter | None = None) -> DeploymentPage:
        """Return one page of deployments, newest first."""
        normalized = (query or DeploymentFilter()).normalized()
        items = await self._store.list(normalized)
        total = await self._store.count(normalized)
        return DeploymentPage(
            items=items,
            total_count=total,
            page=normalized.page,
            page_size=normalized.page_size,
        )

    async def get_valid_next_states(self, deployment_id: str) -> list[DeploymentStatus] | None:
        """Statuses the deployment may move to next; None if unknown."""
        current = await self._store.get(deployment_id)
        if current is None:
            return None
        return self._guard.get_valid_next_states(current.current_status)

    # -- Internal --

    async def _notify(
        self,
        deployment_id: str,
        from_status: DeploymentStatus | None,
        to_status: DeploymentStatus,
        reason_code: str,
    ) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.emit_event(deployment_id, from_status, to_status, reason_code)
        except Exception as exc:
            if self._sli is not None:
                self._sli.notification_failures.labels(to_status=to_status.value).inc()
            log_structured_error(
                logger,
                exc,
                error_code="NOTIFICATION_FAILED",
                deployment_id=deployment_id,
                context={
                    "from_status": from_status.value if from_status else None,
                    "to_status": to_status.value,
                    "reason_code": reason_code,
                },
                level=logging.WARNING,
            )
