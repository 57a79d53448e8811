"""Deployment status API -- query and drive token deployments via REST.

- POST /api/v1/token/deployments                         -> create (QUEUED)
- GET  /api/v1/token/deployments                         -> filtered, paginated list
- GET  /api/v1/token/deployments/metrics                 -> deployment analytics
- POST /api/v1/token/deployments/audit/export            -> batch audit export (Idempotency-Key)
- GET  /api/v1/token/deployments/{id}                    -> current record
- GET  /api/v1/token/deployments/{id}/history            -> status history
- GET  /api/v1/token/deployments/{id}/next-states        -> legal next statuses
- GET  /api/v1/token/deployments/{id}/audit              -> audit trail (format=json|csv)
- POST /api/v1/token/deployments/{id}/status             -> status transition
- POST /api/v1/token/deployments/{id}/fail               -> mark failed
- POST /api/v1/token/deployments/{id}/cancel             -> cancel (QUEUED only)
- POST /api/v1/token/deployments/{id}/asset-identifier   -> set asset identifier

Guard rejections become 409 with reason_code and valid_alternatives;
unknown ids become 404.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field

from token_lifecycle.lifecycle.analytics import collect_deployment_metrics
from token_lifecycle.lifecycle.audit import (
    AuditExportFormat,
    AuditExportRequest,
    DeploymentAuditService,
    parse_export_format,
)
from token_lifecycle.shared.errors import NotFoundError, TransitionRejectedError, ValidationError
from token_lifecycle.shared.types import (
    DeploymentError,
    DeploymentErrorCategory,
    DeploymentFilter,
    DeploymentStatus,
)

if TYPE_CHECKING:
    from token_lifecycle.lifecycle.status_service import DeploymentStatusService
    from token_lifecycle.ports.deployment_store import DeploymentRecordStore
    from token_lifecycle.shared.types import (
        DeploymentStatusEntry,
        StatusUpdateResult,
        TokenDeployment,
    )

logger = logging.getLogger(__name__)


# -- Response models --


class DeploymentResponse(BaseModel):
    deployment_id: str
    token_standard: str
    network: str
    current_status: str
    asset_name: str | None = None
    asset_symbol: str | None = None
    deployed_by: str | None = None
    correlation_id: str | None = None
    transaction_hash: str | None = None
    asset_identifier: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class DeploymentListResponse(BaseModel):
    deployments: list[DeploymentResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class StatusEntryResponse(BaseModel):
    entry_id: str
    status: str
    message: str | None = None
    reason_code: str | None = None
    metadata: dict[str, Any] = {}
    transaction_hash: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    duration_from_previous_ms: int | None = None
    timestamp: datetime


class StatusHistoryResponse(BaseModel):
    deployment_id: str
    history: list[StatusEntryResponse]


class NextStatesResponse(BaseModel):
    deployment_id: str
    current_status: str
    valid_next_states: list[str]


class StatusUpdateResponse(BaseModel):
    accepted: bool
    reason_code: str
    explanation: str
    idempotent: bool = False
    deployment: DeploymentResponse


class DeploymentMetricsResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    total_deployments: int
    successful_deployments: int
    failed_deployments: int
    pending_deployments: int
    cancelled_deployments: int
    success_rate: float
    failure_rate: float
    average_duration_ms: int
    median_duration_ms: int
    p95_duration_ms: int
    fastest_duration_ms: int
    slowest_duration_ms: int
    failures_by_category: dict[str, int]
    deployments_by_network: dict[str, int]
    deployments_by_token_standard: dict[str, int]
    average_duration_by_transition: dict[str, int]
    retried_deployments: int
    calculated_at: datetime


class AuditExportResponse(BaseModel):
    data: str
    format: str
    record_count: int
    is_cached: bool
    generated_at: datetime


# -- Request models --


class CreateDeploymentRequest(BaseModel):
    token_standard: str = Field(min_length=1, max_length=64)
    network: str = Field(min_length=1, max_length=64)
    asset_name: str | None = None
    asset_symbol: str | None = None
    deployed_by: str | None = None
    correlation_id: str | None = None


class CreateDeploymentResponse(BaseModel):
    deployment_id: str
    status: str


class UpdateStatusRequest(BaseModel):
    status: str
    message: str | None = None
    transaction_hash: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] | None = None


class MarkFailedRequest(BaseModel):
    error_message: str
    is_retryable: bool = False
    error_code: str | None = None
    error_category: str | None = None
    suggested_retry_delay_seconds: int | None = None


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class AssetIdentifierRequest(BaseModel):
    asset_identifier: str = Field(min_length=1, max_length=128)


class AuditExportBody(BaseModel):
    format: str = "json"
    network: str | None = None
    status: str | None = None
    token_standard: str | None = None
    deployed_by: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = 1
    page_size: int = 100


# -- Helpers --


def parse_status(value: str, *, field: str = "status") -> DeploymentStatus:
    try:
        return DeploymentStatus(value.strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in DeploymentStatus)
        msg = f"Invalid status: {value!r} (expected one of: {allowed})"
        raise ValidationError(msg, field=field) from None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _parse_category(value: str) -> DeploymentErrorCategory:
    try:
        return DeploymentErrorCategory(value.strip().lower())
    except ValueError:
        msg = f"Invalid error category: {value!r}"
        raise ValidationError(msg, field="error_category") from None


def _deployment_response(d: TokenDeployment) -> DeploymentResponse:
    return DeploymentResponse(
        deployment_id=d.deployment_id,
        token_standard=d.token_standard,
        network=d.network,
        current_status=d.current_status.value,
        asset_name=d.asset_name,
        asset_symbol=d.asset_symbol,
        deployed_by=d.deployed_by,
        correlation_id=d.correlation_id,
        transaction_hash=d.transaction_hash,
        asset_identifier=d.asset_identifier,
        confirmed_round=d.confirmed_round,
        error_message=d.error_message,
        created_at=d.created_at,
        updated_at=d.updated_at,
    )


def _entry_response(e: DeploymentStatusEntry) -> StatusEntryResponse:
    return StatusEntryResponse(
        entry_id=e.entry_id,
        status=e.status.value,
        message=e.message,
        reason_code=e.reason_code,
        metadata=e.metadata,
        transaction_hash=e.transaction_hash,
        confirmed_round=e.confirmed_round,
        error_message=e.error_message,
        duration_from_previous_ms=e.duration_from_previous_ms,
        timestamp=e.timestamp,
    )


def _to_response(deployment_id: str, result: StatusUpdateResult) -> StatusUpdateResponse:
    """Translate a service result; raises for not-found and rejections."""
    if result.not_found:
        raise NotFoundError("Deployment", deployment_id)
    if not result.accepted:
        validation = result.validation
        raise TransitionRejectedError(
            result.reason_code,
            result.explanation,
            valid_alternatives=[s.value for s in validation.valid_alternatives]
            if validation
            else (),
            violated_invariants=validation.violated_invariants if validation else (),
        )
    if result.deployment is None:
        raise NotFoundError("Deployment", deployment_id)
    return StatusUpdateResponse(
        accepted=True,
        reason_code=result.reason_code,
        explanation=result.explanation,
        idempotent=result.idempotent,
        deployment=_deployment_response(result.deployment),
    )


# -- Router factory --


def create_deployment_router(
    *,
    service: DeploymentStatusService,
    store: DeploymentRecordStore,
    audit: DeploymentAuditService | None = None,
) -> APIRouter:
    """Create deployment status API router."""
    audit = audit or DeploymentAuditService(store)
    router = APIRouter(prefix="/api/v1/token/deployments", tags=["deployments"])

    @router.post("", response_model=CreateDeploymentResponse, status_code=201)
    async def create_deployment(body: CreateDeploymentRequest) -> CreateDeploymentResponse:
        """Queue a new deployment."""
        deployment_id = await service.create_deployment(
            body.token_standard,
            body.network,
            body.correlation_id,
            body.asset_name,
            body.asset_symbol,
            deployed_by=body.deployed_by,
        )
        return CreateDeploymentResponse(
            deployment_id=deployment_id,
            status=DeploymentStatus.QUEUED.value,
        )

    @router.get("", response_model=DeploymentListResponse)
    async def list_deployments(
        network: str | None = None,
        status: str | None = None,
        token_standard: str | None = None,
        deployed_by: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> DeploymentListResponse:
        """List deployments, newest first. page_size is clamped to 1..100."""
        result = await service.list_deployments(
            DeploymentFilter(
                network=network,
                status=parse_status(status) if status else None,
                token_standard=token_standard,
                deployed_by=deployed_by,
                from_date=_as_utc(from_date),
                to_date=_as_utc(to_date),
                page=page,
                page_size=page_size,
            )
        )
        return DeploymentListResponse(
            deployments=[_deployment_response(d) for d in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        )

    @router.get("/metrics", response_model=DeploymentMetricsResponse)
    async def deployment_metrics(
        network: str | None = None,
        token_standard: str | None = None,
        deployed_by: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> DeploymentMetricsResponse:
        """Outcome and duration analytics (default window: last 24h)."""
        metrics = await collect_deployment_metrics(
            store,
            network=network,
            token_standard=token_standard,
            deployed_by=deployed_by,
            from_date=_as_utc(from_date),
            to_date=_as_utc(to_date),
        )
        return DeploymentMetricsResponse(**dataclasses.asdict(metrics))

    @router.post("/audit/export", response_model=AuditExportResponse)
    async def export_audit_trails(
        body: AuditExportBody,
        request: Request,
    ) -> AuditExportResponse:
        """Export audit trails for one filtered page (page_size 1..1000).

        An Idempotency-Key header replays the first result for an hour.
        """
        result = await audit.export_batch(
            AuditExportRequest(
                format=parse_export_format(body.format),
                network=body.network,
                status=parse_status(body.status) if body.status else None,
                token_standard=body.token_standard,
                deployed_by=body.deployed_by,
                from_date=_as_utc(body.from_date),
                to_date=_as_utc(body.to_date),
                page=body.page,
                page_size=body.page_size,
            ),
            idempotency_key=request.headers.get("Idempotency-Key"),
        )
        return AuditExportResponse(
            data=result.data,
            format=result.format.value,
            record_count=result.record_count,
            is_cached=result.is_cached,
            generated_at=result.generated_at,
        )

    @router.get("/{deployment_id}", response_model=DeploymentResponse)
    async def get_deployment(deployment_id: str) -> DeploymentResponse:
        deployment = await service.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)
        return _deployment_response(deployment)

    @router.get("/{deployment_id}/history", response_model=StatusHistoryResponse)
    async def get_history(deployment_id: str) -> StatusHistoryResponse:
        """Status history in creation order."""
        if await service.get_deployment(deployment_id) is None:
            raise NotFoundError("Deployment", deployment_id)
        history = await service.get_status_history(deployment_id)
        return StatusHistoryResponse(
            deployment_id=deployment_id,
            history=[_entry_response(e) for e in history],
        )

    @router.get("/{deployment_id}/next-states", response_model=NextStatesResponse)
    async def get_next_states(deployment_id: str) -> NextStatesResponse:
        deployment = await service.get_deployment(deployment_id)
        states = await service.get_valid_next_states(deployment_id)
        if deployment is None or states is None:
            raise NotFoundError("Deployment", deployment_id)
        return NextStatesResponse(
            deployment_id=deployment_id,
            current_status=deployment.current_status.value,
            valid_next_states=[s.value for s in states],
        )

    @router.get("/{deployment_id}/audit")
    async def get_audit_trail(deployment_id: str, format: str = "json") -> Response:
        export_format = parse_export_format(format)
        data = await audit.export(deployment_id, export_format)
        if export_format is AuditExportFormat.CSV:
            media_type, suffix = "text/csv", "csv"
        else:
            media_type, suffix = "application/json", "json"
        return Response(
            content=data,
            media_type=media_type,
            headers={
                "Content-Disposition": f'attachment; filename="audit-{deployment_id}.{suffix}"'
            },
        )

    @router.post("/{deployment_id}/status", response_model=StatusUpdateResponse)
    async def update_status(deployment_id: str, body: UpdateStatusRequest) -> StatusUpdateResponse:
        result = await service.update_status(
            deployment_id,
            parse_status(body.status),
            body.message,
            body.transaction_hash,
            body.confirmed_round,
            error_message=body.error_message,
            metadata=body.metadata,
        )
        return _to_response(deployment_id, result)

    @router.post("/{deployment_id}/fail", response_model=StatusUpdateResponse)
    async def mark_failed(deployment_id: str, body: MarkFailedRequest) -> StatusUpdateResponse:
        """Mark failed; with error_code the structured error is recorded."""
        if body.error_code:
            error = DeploymentError(
                category=_parse_category(body.error_category)
                if body.error_category
                else DeploymentErrorCategory.UNKNOWN,
                error_code=body.error_code,
                technical_message=body.error_message,
                user_message=body.error_message,
                is_retryable=body.is_retryable,
                suggested_retry_delay_seconds=body.suggested_retry_delay_seconds,
            )
            result = await service.mark_failed_with_error(deployment_id, error)
        else:
            result = await service.mark_failed(
                deployment_id, body.error_message, body.is_retryable
            )
        return _to_response(deployment_id, result)

    @router.post("/{deployment_id}/cancel", response_model=StatusUpdateResponse)
    async def cancel_deployment(deployment_id: str, body: CancelRequest) -> StatusUpdateResponse:
        result = await service.cancel_deployment(deployment_id, body.reason)
        return _to_response(deployment_id, result)

    @router.post("/{deployment_id}/asset-identifier", response_model=DeploymentResponse)
    async def update_asset_identifier(
        deployment_id: str,
        body: AssetIdentifierRequest,
    ) -> DeploymentResponse:
        if not await service.update_asset_identifier(deployment_id, body.asset_identifier):
            raise NotFoundError("Deployment", deployment_id)
        deployment = await service.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)
        return _deployment_response(deployment)

    return router
