"""DeploymentRecordStore adapters."""

from token_lifecycle.infra.store.memory import InMemoryDeploymentStore
from token_lifecycle.infra.store.sql import SqlDeploymentStore

__all__ = [
    "InMemoryDeploymentStore",
    "SqlDeploymentStore",
]
