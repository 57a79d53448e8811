"""Port schema assertion tests.

Verifies Port interfaces maintain expected method signatures and that every
adapter implements them. These tests catch accidental breaking changes to
Port contracts.
"""

from __future__ import annotations

import inspect

import pytest

from tests.fakes import FailingNotificationSink, RecordingNotificationSink
from token_lifecycle.infra.events.outbox import OutboxNotificationSink
from token_lifecycle.infra.store import InMemoryDeploymentStore, SqlDeploymentStore
from token_lifecycle.ports import DeploymentRecordStore, NotificationSink


@pytest.mark.unit
class TestDeploymentRecordStoreContract:
    @pytest.mark.parametrize(
        "method",
        ["create", "get", "update", "save_transition", "get_history", "list", "count"],
    )
    def test_async_abstract_methods(self, method: str) -> None:
        fn = getattr(DeploymentRecordStore, method)
        assert inspect.iscoroutinefunction(fn)
        assert method in DeploymentRecordStore.__abstractmethods__

    def test_create_takes_initial_entry(self) -> None:
        params = list(inspect.signature(DeploymentRecordStore.create).parameters)
        assert params == ["self", "deployment", "initial_entry"]

    def test_save_transition_takes_expected_status(self) -> None:
        sig = inspect.signature(DeploymentRecordStore.save_transition)
        assert list(sig.parameters) == ["self", "deployment", "entry", "expected_status"]
        assert sig.parameters["expected_status"].kind is inspect.Parameter.KEYWORD_ONLY

    def test_update_expected_status_is_optional(self) -> None:
        param = inspect.signature(DeploymentRecordStore.update).parameters["expected_status"]
        assert param.kind is inspect.Parameter.KEYWORD_ONLY
        assert param.default is None

    def test_cannot_instantiate(self) -> None:
        with pytest.raises(TypeError):
            DeploymentRecordStore()  # type: ignore[abstract]

    @pytest.mark.parametrize("adapter", [InMemoryDeploymentStore, SqlDeploymentStore])
    def test_adapters_implement_port(self, adapter: type) -> None:
        assert issubclass(adapter, DeploymentRecordStore)
        assert not adapter.__abstractmethods__


@pytest.mark.unit
class TestNotificationSinkContract:
    def test_emit_event_signature(self) -> None:
        fn = NotificationSink.emit_event
        assert inspect.iscoroutinefunction(fn)
        params = list(inspect.signature(fn).parameters)
        assert params == ["self", "deployment_id", "from_status", "to_status", "reason_code"]

    @pytest.mark.parametrize(
        "adapter",
        [OutboxNotificationSink, RecordingNotificationSink, FailingNotificationSink],
    )
    def test_adapters_implement_port(self, adapter: type) -> None:
        assert issubclass(adapter, NotificationSink)
        assert not adapter.__abstractmethods__
