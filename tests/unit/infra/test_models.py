"""ORM model schema assertion tests.

Verifies SQLAlchemy ORM models match migration DDL.
These tests catch drift between models.py and migration files.
"""

from __future__ import annotations

import pytest

from token_lifecycle.infra.models import (
    Base,
    DeploymentStatusHistoryModel,
    TokenDeploymentModel,
)


def _col_names(model) -> set[str]:
    """Extract column names from a SQLAlchemy model."""
    return {c.name for c in model.__table__.columns}


@pytest.mark.unit
class TestTokenDeploymentModel:
    """Verify TokenDeploymentModel matches the 001 migration."""

    def test_tablename(self) -> None:
        assert TokenDeploymentModel.__tablename__ == "token_deployments"

    def test_required_columns(self) -> None:
        cols = _col_names(TokenDeploymentModel)
        expected = {
            "deployment_id",
            "sequence",
            "token_standard",
            "network",
            "current_status",
            "asset_name",
            "asset_symbol",
            "deployed_by",
            "correlation_id",
            "transaction_hash",
            "asset_identifier",
            "confirmed_round",
            "error_message",
            "created_at",
            "updated_at",
        }
        assert expected.issubset(cols), f"Missing: {expected - cols}"

    def test_primary_key(self) -> None:
        pk_cols = [c.name for c in TokenDeploymentModel.__table__.primary_key.columns]
        assert pk_cols == ["deployment_id"]

    def test_sequence_is_unique(self) -> None:
        assert TokenDeploymentModel.__table__.c.sequence.unique is True

    def test_filter_columns_indexed(self) -> None:
        indexed = {
            tuple(c.name for c in idx.columns) for idx in TokenDeploymentModel.__table__.indexes
        }
        assert ("network",) in indexed
        assert ("current_status",) in indexed
        assert ("deployed_by",) in indexed
        assert ("created_at", "sequence") in indexed


@pytest.mark.unit
class TestDeploymentStatusHistoryModel:
    """Verify DeploymentStatusHistoryModel matches the 001 migration."""

    def test_tablename(self) -> None:
        assert DeploymentStatusHistoryModel.__tablename__ == "deployment_status_history"

    def test_metadata_column_name(self) -> None:
        cols = _col_names(DeploymentStatusHistoryModel)
        assert "metadata" in cols
        assert "metadata_" not in cols

    def test_deployment_fk_cascades(self) -> None:
        col = DeploymentStatusHistoryModel.__table__.c.deployment_id
        [fk] = col.foreign_keys
        assert fk.target_fullname == "token_deployments.deployment_id"
        assert fk.ondelete == "CASCADE"
        assert col.nullable is False


@pytest.mark.unit
def test_base_registers_both_tables() -> None:
    assert set(Base.metadata.tables) == {"token_deployments", "deployment_status_history"}
