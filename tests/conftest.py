"""Root conftest - shared fixtures for all test layers.

Markers:
    @pytest.mark.unit        - No external deps
    @pytest.mark.integration - Multi-component, in-process
"""

from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from tests.fakes import RecordingNotificationSink
from token_lifecycle.infra.store.memory import InMemoryDeploymentStore
from token_lifecycle.lifecycle.sli import LifecycleSLI
from token_lifecycle.lifecycle.status_service import DeploymentStatusService
from token_lifecycle.shared.trace_context import set_correlation_id


@pytest.fixture(autouse=True)
def _clear_correlation_id():
    """Correlation ids set by one test must not leak into the next."""
    set_correlation_id("")
    yield
    set_correlation_id("")


@pytest.fixture
def store() -> InMemoryDeploymentStore:
    return InMemoryDeploymentStore()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def sli(registry: CollectorRegistry) -> LifecycleSLI:
    return LifecycleSLI(registry=registry)


@pytest.fixture
def service(
    store: InMemoryDeploymentStore,
    sink: RecordingNotificationSink,
    sli: LifecycleSLI,
) -> DeploymentStatusService:
    return DeploymentStatusService(store, sink=sink, sli=sli)
