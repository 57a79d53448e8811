"""SQLAlchemy ORM models for the deployment lifecycle store.

Maps to migration DDL in migrations/versions/:
  001_create_token_deployments.py -> TokenDeploymentModel, DeploymentStatusHistoryModel

These models live in the Infrastructure layer and back SqlDeploymentStore.
The lifecycle layer MUST NOT import this module directly.
"""

from __future__ import annotations

import uuid as _uuid  # noqa: TC003 -- SQLAlchemy resolves Mapped[] annotations at runtime
from datetime import datetime  # noqa: TC003
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("now()")


class Base(DeclarativeBase):
    """Declarative base for all lifecycle ORM models."""


class TokenDeploymentModel(Base):
    """Current record of a token deployment.

    `sequence` is insertion order; it breaks created_at ties when paging.

    See: 001_create_token_deployments migration
    """

    __tablename__ = "token_deployments"

    deployment_id: Mapped[_uuid.UUID] = mapped_column(_UUID, primary_key=True)
    sequence: Mapped[int] = mapped_column(
        sa.BigInteger(),
        sa.Identity(always=False),
        nullable=False,
        unique=True,
    )
    token_standard: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    network: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    current_status: Mapped[str] = mapped_column(
        sa.String(32),
        nullable=False,
        server_default="queued",
        comment="queued|submitted|pending|confirmed|indexed|completed|failed|cancelled",
    )
    asset_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    asset_symbol: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    deployed_by: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    asset_identifier: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    confirmed_round: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.Index("ix_token_deployments_network", "network"),
        sa.Index("ix_token_deployments_current_status", "current_status"),
        sa.Index("ix_token_deployments_deployed_by", "deployed_by"),
        sa.Index("ix_token_deployments_created_at", "created_at", "sequence"),
    )


class DeploymentStatusHistoryModel(Base):
    """Append-only status history entry.

    No update/delete operations; ordered by `sequence`.

    See: 001_create_token_deployments migration
    """

    __tablename__ = "deployment_status_history"

    entry_id: Mapped[_uuid.UUID] = mapped_column(_UUID, primary_key=True)
    sequence: Mapped[int] = mapped_column(
        sa.BigInteger(),
        sa.Identity(always=False),
        nullable=False,
        unique=True,
    )
    deployment_id: Mapped[_uuid.UUID] = mapped_column(
        _UUID,
        sa.ForeignKey("token_deployments.deployment_id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    reason_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        postgresql.JSONB,
        nullable=False,
        server_default=sa.text("'{}'::jsonb"),
    )
    transaction_hash: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    confirmed_round: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration_from_previous_ms: Mapped[int | None] = mapped_column(
        sa.BigInteger(),
        nullable=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.Index("ix_deployment_status_history_deployment", "deployment_id", "sequence"),
        sa.Index("ix_deployment_status_history_status", "status"),
    )
