"""Create token_deployments and deployment_status_history tables.

Revision ID: 001_token_deployments
Revises:
Create Date: 2026-10-19

Rollback: drop both tables (history first, it references deployments).
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_token_deployments"
down_revision = None
branch_labels = None
depends_on = None

# -- Migration metadata --
reversible_type = "full"  # DDL fully reversible via downgrade()
rollback_artifact = "alembic downgrade -1"

_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("now()")


def upgrade() -> None:
    op.create_table(
        "token_deployments",
        sa.Column("deployment_id", _UUID, primary_key=True),
        sa.Column(
            "sequence",
            sa.BigInteger(),
            sa.Identity(always=False),
            nullable=False,
            unique=True,
        ),
        sa.Column("token_standard", sa.String(64), nullable=False),
        sa.Column("network", sa.String(64), nullable=False),
        sa.Column(
            "current_status",
            sa.String(32),
            nullable=False,
            server_default="queued",
            comment="queued|submitted|pending|confirmed|indexed|completed|failed|cancelled",
        ),
        sa.Column("asset_name", sa.String(255), nullable=True),
        sa.Column("asset_symbol", sa.String(32), nullable=True),
        sa.Column("deployed_by", sa.String(128), nullable=True),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("asset_identifier", sa.String(128), nullable=True),
        sa.Column("confirmed_round", sa.BigInteger(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
    )
    op.create_index("ix_token_deployments_network", "token_deployments", ["network"])
    op.create_index(
        "ix_token_deployments_current_status",
        "token_deployments",
        ["current_status"],
    )
    op.create_index("ix_token_deployments_deployed_by", "token_deployments", ["deployed_by"])
    # Listing order: newest first, insertion sequence breaks ties
    op.create_index(
        "ix_token_deployments_created_at",
        "token_deployments",
        ["created_at", "sequence"],
    )

    op.create_table(
        "deployment_status_history",
        sa.Column("entry_id", _UUID, primary_key=True),
        sa.Column(
            "sequence",
            sa.BigInteger(),
            sa.Identity(always=False),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "deployment_id",
            _UUID,
            sa.ForeignKey("token_deployments.deployment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("reason_code", sa.String(64), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("confirmed_round", sa.BigInteger(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_from_previous_ms", sa.BigInteger(), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
    )
    op.create_index(
        "ix_deployment_status_history_deployment",
        "deployment_status_history",
        ["deployment_id", "sequence"],
    )
    op.create_index(
        "ix_deployment_status_history_status",
        "deployment_status_history",
        ["status"],
    )


def downgrade() -> None:
    op.drop_table("deployment_status_history")
    op.drop_table("token_deployments")
