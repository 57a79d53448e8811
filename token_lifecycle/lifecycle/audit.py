"""Audit-trail export for deployments.

- export_json / export_csv: one deployment's record plus its full status history
- export_batch: the same trails for a filtered page of deployments, with an
  optional idempotency key that replays the first result for one hour

JSON is an indented object (a list for batches) with the record fields,
status_history, total_duration_ms (first to last history timestamp) and
error_summary. CSV has one quoted row per history entry; embedded newlines
are flattened to spaces.
"""

from __future__ import annotations

import csv
import dataclasses
import enum
import io
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from token_lifecycle.shared.errors import ConflictError, NotFoundError, ValidationError
from token_lifecycle.shared.types import DeploymentFilter, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from token_lifecycle.ports.deployment_store import DeploymentRecordStore
    from token_lifecycle.shared.types import (
        DeploymentStatus,
        DeploymentStatusEntry,
        TokenDeployment,
    )

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    "deployment_id",
    "token_standard",
    "asset_name",
    "asset_symbol",
    "network",
    "deployed_by",
    "asset_identifier",
    "transaction_hash",
    "status",
    "timestamp",
    "message",
    "reason_code",
    "confirmed_round",
    "error_message",
    "duration_from_previous_ms",
)

MAX_EXPORT_PAGE_SIZE = 1000
EXPORT_CACHE_TTL = timedelta(hours=1)
_STORE_PAGE = 100


class AuditExportFormat(enum.Enum):
    JSON = "json"
    CSV = "csv"


def parse_export_format(value: str) -> AuditExportFormat:
    try:
        return AuditExportFormat(value.strip().lower())
    except ValueError:
        msg = f"Invalid export format: {value!r} (expected json or csv)"
        raise ValidationError(msg, field="format") from None


@dataclass(frozen=True)
class AuditExportRequest:
    """Filter, page and format of a batch export. page is 1-based."""

    format: AuditExportFormat = AuditExportFormat.JSON
    network: str | None = None
    status: DeploymentStatus | None = None
    token_standard: str | None = None
    deployed_by: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = 1
    page_size: int = 100


@dataclass(frozen=True)
class AuditExportResult:
    data: str
    format: AuditExportFormat
    record_count: int
    generated_at: datetime
    is_cached: bool = False


@dataclass(frozen=True)
class _CachedExport:
    request: AuditExportRequest
    result: AuditExportResult
    expires_at: datetime


# -- Rendering --


def total_duration_ms(history: list[DeploymentStatusEntry]) -> int:
    """Milliseconds from the earliest to the latest history entry (0 below two entries)."""
    if len(history) < 2:
        return 0
    stamps = sorted(e.timestamp for e in history)
    return int((stamps[-1] - stamps[0]).total_seconds() * 1000)


def _entry_dict(entry: DeploymentStatusEntry) -> dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "status": entry.status.value,
        "message": entry.message,
        "reason_code": entry.reason_code,
        "metadata": entry.metadata,
        "transaction_hash": entry.transaction_hash,
        "confirmed_round": entry.confirmed_round,
        "error_message": entry.error_message,
        "duration_from_previous_ms": entry.duration_from_previous_ms,
        "timestamp": entry.timestamp.isoformat(),
    }


def audit_trail(
    deployment: TokenDeployment,
    history: list[DeploymentStatusEntry],
) -> dict[str, Any]:
    """Build the JSON-ready audit trail of one deployment."""
    return {
        "deployment_id": deployment.deployment_id,
        "token_standard": deployment.token_standard,
        "asset_name": deployment.asset_name,
        "asset_symbol": deployment.asset_symbol,
        "network": deployment.network,
        "deployed_by": deployment.deployed_by,
        "correlation_id": deployment.correlation_id,
        "asset_identifier": deployment.asset_identifier,
        "transaction_hash": deployment.transaction_hash,
        "current_status": deployment.current_status.value,
        "created_at": deployment.created_at.isoformat(),
        "updated_at": deployment.updated_at.isoformat(),
        "status_history": [_entry_dict(e) for e in history],
        "total_duration_ms": total_duration_ms(history),
        "error_summary": deployment.error_message,
    }


def _flat(value: object) -> str:
    if value is None:
        return ""
    return str(value).replace("\r", "").replace("\n", " ")


def _csv_rows(
    deployment: TokenDeployment,
    history: list[DeploymentStatusEntry],
) -> list[list[str]]:
    return [
        [
            _flat(deployment.deployment_id),
            _flat(deployment.token_standard),
            _flat(deployment.asset_name),
            _flat(deployment.asset_symbol),
            _flat(deployment.network),
            _flat(deployment.deployed_by),
            _flat(deployment.asset_identifier),
            _flat(entry.transaction_hash),
            entry.status.value,
            entry.timestamp.isoformat(),
            _flat(entry.message),
            _flat(entry.reason_code),
            _flat(entry.confirmed_round),
            _flat(entry.error_message),
            _flat(entry.duration_from_previous_ms),
        ]
        for entry in history
    ]


def render_csv(trails: list[tuple[TokenDeployment, list[DeploymentStatusEntry]]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for deployment, history in trails:
        writer.writerows(_csv_rows(deployment, history))
    return buffer.getvalue()


# -- Service --


class DeploymentAuditService:
    """Exports audit trails from a DeploymentRecordStore.

    The idempotency cache is per instance and in memory; entries expire
    after `cache_ttl`.
    """

    def __init__(
        self,
        store: DeploymentRecordStore,
        *,
        cache_ttl: timedelta = EXPORT_CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, _CachedExport] = {}

    async def export(self, deployment_id: str, export_format: AuditExportFormat) -> str:
        if export_format is AuditExportFormat.CSV:
            return await self.export_csv(deployment_id)
        return await self.export_json(deployment_id)

    async def export_json(self, deployment_id: str) -> str:
        """Serialize one deployment's audit trail as indented JSON.

        Raises:
            NotFoundError: If the deployment does not exist.
        """
        deployment, history = await self._load(deployment_id)
        data = json.dumps(audit_trail(deployment, history), indent=2)
        logger.info(
            "Exported audit trail: deployment=%s format=json size=%d", deployment_id, len(data)
        )
        return data

    async def export_csv(self, deployment_id: str) -> str:
        """Serialize one deployment's history as CSV, one row per entry.

        Raises:
            NotFoundError: If the deployment does not exist.
        """
        deployment, history = await self._load(deployment_id)
        data = render_csv([(deployment, history)])
        logger.info(
            "Exported audit trail: deployment=%s format=csv size=%d", deployment_id, len(data)
        )
        return data

    async def export_batch(
        self,
        request: AuditExportRequest,
        idempotency_key: str | None = None,
    ) -> AuditExportResult:
        """Export the audit trails of one filtered page of deployments.

        A repeated idempotency key with an identical request replays the
        cached result (is_cached=True) until it expires.

        Raises:
            ValidationError: If page or page_size is out of range.
            ConflictError: If the idempotency key was used for a different request.
        """
        if idempotency_key:
            cached = self._cached(idempotency_key, request)
            if cached is not None:
                return cached

        if not 1 <= request.page_size <= MAX_EXPORT_PAGE_SIZE:
            msg = f"page_size must be between 1 and {MAX_EXPORT_PAGE_SIZE}"
            raise ValidationError(msg, field="page_size")
        if request.page < 1:
            raise ValidationError("page must be at least 1", field="page")

        deployments = await self._select(request)
        trails = [(d, await self._store.get_history(d.deployment_id)) for d in deployments]
        if request.format is AuditExportFormat.CSV:
            data = render_csv(trails)
        else:
            data = json.dumps([audit_trail(d, h) for d, h in trails], indent=2)

        result = AuditExportResult(
            data=data,
            format=request.format,
            record_count=len(deployments),
            generated_at=self._clock(),
        )
        if idempotency_key:
            self._cache[idempotency_key] = _CachedExport(
                request=request,
                result=result,
                expires_at=result.generated_at + self._cache_ttl,
            )
        logger.info(
            "Exported audit trails: count=%d format=%s",
            result.record_count,
            request.format.value,
        )
        return result

    def _cached(self, key: str, request: AuditExportRequest) -> AuditExportResult | None:
        cached = self._cache.get(key)
        if cached is None:
            return None
        if cached.expires_at <= self._clock():
            del self._cache[key]
            return None
        if cached.request != request:
            logger.warning("Idempotency key reused with a different export request: key=%s", key)
            raise ConflictError(
                "Idempotency key already used with different request parameters",
                code="IDEMPOTENCY_KEY_REUSED",
            )
        logger.info("Returning cached audit export: key=%s", key)
        return dataclasses.replace(cached.result, is_cached=True)

    async def _load(
        self,
        deployment_id: str,
    ) -> tuple[TokenDeployment, list[DeploymentStatusEntry]]:
        deployment = await self._store.get(deployment_id)
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)
        return deployment, await self._store.get_history(deployment_id)

    async def _select(self, request: AuditExportRequest) -> list[TokenDeployment]:
        # The store pages at most 100 rows; walk its pages to cover the export page.
        offset = (request.page - 1) * request.page_size
        store_page = offset // _STORE_PAGE + 1
        skip = offset % _STORE_PAGE
        base = DeploymentFilter(
            network=request.network,
            status=request.status,
            token_standard=request.token_standard,
            deployed_by=request.deployed_by,
            from_date=request.from_date,
            to_date=request.to_date,
            page_size=_STORE_PAGE,
        )
        selected: list[TokenDeployment] = []
        while len(selected) < request.page_size:
            batch = await self._store.list(dataclasses.replace(base, page=store_page))
            selected.extend(batch[skip:])
            if len(batch) < _STORE_PAGE:
                break
            skip = 0
            store_page += 1
        return selected[: request.page_size]
