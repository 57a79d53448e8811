"""PostgreSQL-backed DeploymentRecordStore using SQLAlchemy async ORM.

- token_deployments holds the current record
- deployment_status_history is append-only, ordered by sequence
- save_transition writes both in one transaction (single commit)
- Current-record updates are conditional on the status the caller read, so
  writers in different processes cannot both apply a transition
- Driver/connection failures surface as StoreUnavailableError
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any
from uuid import UUID

import sqlalchemy as sa

from token_lifecycle.infra.models import DeploymentStatusHistoryModel, TokenDeploymentModel
from token_lifecycle.ports.deployment_store import DeploymentRecordStore
from token_lifecycle.shared.errors import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from token_lifecycle.shared.types import (
    DeploymentStatus,
    DeploymentStatusEntry,
    TokenDeployment,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from token_lifecycle.shared.types import DeploymentFilter

logger = logging.getLogger(__name__)

_STORE_NAME = "postgres"


def _parse_id(deployment_id: str) -> UUID | None:
    try:
        return UUID(deployment_id)
    except (TypeError, ValueError):
        return None


def _filter_clauses(query: DeploymentFilter) -> list[Any]:
    model = TokenDeploymentModel
    clauses: list[Any] = []
    if query.network:
        clauses.append(sa.func.lower(model.network) == query.network.lower())
    if query.token_standard:
        clauses.append(sa.func.lower(model.token_standard) == query.token_standard.lower())
    if query.deployed_by:
        clauses.append(sa.func.lower(model.deployed_by) == query.deployed_by.lower())
    if query.status is not None:
        clauses.append(model.current_status == query.status.value)
    if query.from_date is not None:
        clauses.append(model.created_at >= query.from_date)
    if query.to_date is not None:
        clauses.append(model.created_at <= query.to_date)
    return clauses


def _record_values(deployment: TokenDeployment) -> dict[str, Any]:
    """Mutable columns of token_deployments."""
    return {
        "current_status": deployment.current_status.value,
        "transaction_hash": deployment.transaction_hash,
        "asset_identifier": deployment.asset_identifier,
        "confirmed_round": deployment.confirmed_round,
        "error_message": deployment.error_message,
        "updated_at": deployment.updated_at,
    }


def _entry_model(entry: DeploymentStatusEntry) -> DeploymentStatusHistoryModel:
    return DeploymentStatusHistoryModel(
        entry_id=UUID(entry.entry_id),
        deployment_id=UUID(entry.deployment_id),
        status=entry.status.value,
        message=entry.message,
        reason_code=entry.reason_code,
        metadata_=dict(entry.metadata),
        transaction_hash=entry.transaction_hash,
        confirmed_round=entry.confirmed_round,
        error_message=entry.error_message,
        duration_from_previous_ms=entry.duration_from_previous_ms,
        timestamp=entry.timestamp,
    )


class SqlDeploymentStore(DeploymentRecordStore):
    """Deployment store over token_deployments + deployment_status_history."""

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except sa.exc.SQLAlchemyError as exc:
            logger.error("Deployment store error: %s", exc)
            msg = "Deployment store is temporarily unavailable"
            raise StoreUnavailableError(_STORE_NAME, msg) from exc

    async def create(
        self,
        deployment: TokenDeployment,
        initial_entry: DeploymentStatusEntry,
    ) -> None:
        deployment_uuid = UUID(deployment.deployment_id)
        async with self._session() as session:
            dup = await session.execute(
                sa.select(TokenDeploymentModel.deployment_id).where(
                    TokenDeploymentModel.deployment_id == deployment_uuid
                )
            )
            if dup.scalar_one_or_none() is not None:
                msg = f"Deployment already exists: {deployment.deployment_id}"
                raise ConflictError(msg, code="ALREADY_EXISTS")

            session.add(
                TokenDeploymentModel(
                    deployment_id=deployment_uuid,
                    token_standard=deployment.token_standard,
                    network=deployment.network,
                    asset_name=deployment.asset_name,
                    asset_symbol=deployment.asset_symbol,
                    deployed_by=deployment.deployed_by,
                    correlation_id=deployment.correlation_id,
                    created_at=deployment.created_at,
                    **_record_values(deployment),
                )
            )
            # Parent row must exist before the history FK is checked
            await session.flush()
            session.add(_entry_model(initial_entry))
            await session.commit()

    async def get(self, deployment_id: str) -> TokenDeployment | None:
        deployment_uuid = _parse_id(deployment_id)
        if deployment_uuid is None:
            return None
        stmt = sa.select(TokenDeploymentModel).where(
            TokenDeploymentModel.deployment_id == deployment_uuid
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        return _orm_to_domain(row) if row is not None else None

    async def update(
        self,
        deployment: TokenDeployment,
        *,
        expected_status: DeploymentStatus | None = None,
    ) -> None:
        async with self._session() as session:
            await self._update_current(session, deployment, expected_status)
            await session.commit()

    async def save_transition(
        self,
        deployment: TokenDeployment,
        entry: DeploymentStatusEntry,
        *,
        expected_status: DeploymentStatus,
    ) -> None:
        async with self._session() as session:
            await self._update_current(session, deployment, expected_status)
            session.add(_entry_model(entry))
            await session.commit()

    async def get_history(self, deployment_id: str) -> list[DeploymentStatusEntry]:
        deployment_uuid = _parse_id(deployment_id)
        if deployment_uuid is None:
            return []
        stmt = (
            sa.select(DeploymentStatusHistoryModel)
            .where(DeploymentStatusHistoryModel.deployment_id == deployment_uuid)
            .order_by(DeploymentStatusHistoryModel.sequence)
        )
        async with self._session() as session:
            result = await session.scalars(stmt)
            rows = result.all()
        return [_history_orm_to_domain(row) for row in rows]

    async def list(self, query: DeploymentFilter) -> list[TokenDeployment]:
        stmt = (
            sa.select(TokenDeploymentModel)
            .where(*_filter_clauses(query))
            .order_by(
                TokenDeploymentModel.created_at.desc(),
                TokenDeploymentModel.sequence.desc(),
            )
            .offset(query.offset)
            .limit(query.page_size)
        )
        async with self._session() as session:
            result = await session.scalars(stmt)
            rows = result.all()
        return [_orm_to_domain(row) for row in rows]

    async def count(self, query: DeploymentFilter) -> int:
        stmt = (
            sa.select(sa.func.count())
            .select_from(TokenDeploymentModel)
            .where(*_filter_clauses(query))
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)

    async def _update_current(
        self,
        session: AsyncSession,
        deployment: TokenDeployment,
        expected_status: DeploymentStatus | None,
    ) -> None:
        deployment_id = deployment.deployment_id
        deployment_uuid = _parse_id(deployment_id)
        if deployment_uuid is None:
            raise NotFoundError("Deployment", deployment_id)
        stmt = sa.update(TokenDeploymentModel).where(
            TokenDeploymentModel.deployment_id == deployment_uuid
        )
        if expected_status is not None:
            stmt = stmt.where(TokenDeploymentModel.current_status == expected_status.value)
        result = await session.execute(stmt.values(**_record_values(deployment)))
        if result.rowcount > 0:
            return

        # Nothing updated: tell a missing row from a status another writer changed
        current = await session.execute(
            sa.select(TokenDeploymentModel.current_status).where(
                TokenDeploymentModel.deployment_id == deployment_uuid
            )
        )
        actual = current.scalar_one_or_none()
        if actual is None or expected_status is None:
            raise NotFoundError("Deployment", deployment_id)
        logger.warning(
            "Concurrent status change: id=%s expected=%s actual=%s",
            deployment_id,
            expected_status.value,
            actual,
        )
        raise ConcurrentModificationError(deployment_id, expected_status.value, actual)


def _orm_to_domain(row: TokenDeploymentModel) -> TokenDeployment:
    """Convert a TokenDeploymentModel ORM row to the TokenDeployment dataclass."""
    return TokenDeployment(
        deployment_id=str(row.deployment_id),
        token_standard=row.token_standard,
        network=row.network,
        current_status=DeploymentStatus(row.current_status),
        asset_name=row.asset_name,
        asset_symbol=row.asset_symbol,
        deployed_by=row.deployed_by,
        correlation_id=row.correlation_id,
        transaction_hash=row.transaction_hash,
        asset_identifier=row.asset_identifier,
        confirmed_round=row.confirmed_round,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _history_orm_to_domain(row: DeploymentStatusHistoryModel) -> DeploymentStatusEntry:
    return DeploymentStatusEntry(
        entry_id=str(row.entry_id),
        deployment_id=str(row.deployment_id),
        status=DeploymentStatus(row.status),
        message=row.message,
        reason_code=row.reason_code,
        metadata=dict(row.metadata_ or {}),
        transaction_hash=row.transaction_hash,
        confirmed_round=row.confirmed_round,
        error_message=row.error_message,
        duration_from_previous_ms=row.duration_from_previous_ms,
        timestamp=row.timestamp,
    )
