"""Tests for the deployment event outbox (at-least-once delivery).

Acceptance: pytest tests/unit/infra/test_outbox.py -v
"""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from token_lifecycle.infra.events.outbox import (
    DEPLOYMENT_STATUS_CHANGED,
    EventOutbox,
    EventStatus,
    OutboxDispatcher,
    OutboxEvent,
    OutboxNotificationSink,
    dispatch_pending,
    log_deliverer,
)
from token_lifecycle.lifecycle.status_service import DeploymentStatusService
from token_lifecycle.shared.trace_context import correlation_context
from token_lifecycle.shared.types import DeploymentStatus


@pytest.fixture()
def outbox():
    return EventOutbox()


@pytest.fixture()
def deployment_id():
    return str(uuid4())


class TestEventOutboxAppend:
    """EventOutbox.append creates events correctly."""

    def test_append_returns_event(self, outbox, deployment_id):
        event = outbox.append(
            aggregate_id=deployment_id,
            event_type="token_deployment.started",
            payload={"to_status": "queued"},
        )
        assert isinstance(event, OutboxEvent)
        assert event.aggregate_id == deployment_id
        assert event.event_type == "token_deployment.started"
        assert event.status == EventStatus.PENDING

    def test_append_assigns_unique_ids(self, outbox, deployment_id):
        e1 = outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        e2 = outbox.append(aggregate_id=deployment_id, event_type="b", payload={})
        assert e1.id != e2.id

    def test_max_retries_defaults_to_outbox_setting(self, deployment_id):
        outbox = EventOutbox(max_retries=2)
        event = outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        assert event.max_retries == 2
        event = outbox.append(aggregate_id=deployment_id, event_type="a", payload={}, max_retries=7)
        assert event.max_retries == 7


class TestEventOutboxGetPending:
    """EventOutbox.get_pending returns pending events in order."""

    def test_empty_outbox_returns_empty(self, outbox):
        assert outbox.get_pending() == []

    def test_returns_pending_events(self, outbox, deployment_id):
        outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        outbox.append(aggregate_id=deployment_id, event_type="b", payload={})
        pending = outbox.get_pending()
        assert [e.event_type for e in pending] == ["a", "b"]

    def test_respects_limit(self, outbox, deployment_id):
        for i in range(10):
            outbox.append(aggregate_id=deployment_id, event_type=f"e{i}", payload={})
        assert len(outbox.get_pending(limit=3)) == 3

    def test_events_for_filters_by_deployment(self, outbox, deployment_id):
        outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        outbox.append(aggregate_id="other", event_type="b", payload={})
        assert [e.event_type for e in outbox.events_for(deployment_id)] == ["a"]


class TestEventOutboxLifecycle:
    """Full lifecycle: PENDING -> PROCESSING -> DELIVERED."""

    def test_happy_path(self, outbox, deployment_id):
        event = outbox.append(aggregate_id=deployment_id, event_type="test", payload={})

        assert outbox.mark_processing(event.id) is True
        assert event.status == EventStatus.PROCESSING

        assert outbox.mark_delivered(event.id) is True
        assert event.status == EventStatus.DELIVERED
        assert event.processed_at is not None

    def test_cannot_deliver_pending(self, outbox, deployment_id):
        event = outbox.append(aggregate_id=deployment_id, event_type="test", payload={})
        assert outbox.mark_delivered(event.id) is False

    def test_unknown_event(self, outbox):
        assert outbox.mark_processing(uuid4()) is False
        assert outbox.mark_failed(uuid4()) is False

    def test_failure_returns_to_pending_then_gives_up(self, deployment_id):
        outbox = EventOutbox(max_retries=2)
        event = outbox.append(aggregate_id=deployment_id, event_type="test", payload={})

        outbox.mark_processing(event.id)
        outbox.mark_failed(event.id, error="timeout")
        assert event.status == EventStatus.PENDING
        assert event.retry_count == 1
        assert event.error_message == "timeout"

        outbox.mark_processing(event.id)
        outbox.mark_failed(event.id, error="timeout")
        assert event.status == EventStatus.FAILED
        assert outbox.get_pending() == []

    def test_count_by_status(self, outbox, deployment_id):
        e1 = outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        outbox.append(aggregate_id=deployment_id, event_type="b", payload={})
        outbox.mark_processing(e1.id)
        counts = outbox.count_by_status()
        assert counts[EventStatus.PENDING] == 1
        assert counts[EventStatus.PROCESSING] == 1
        assert counts[EventStatus.DELIVERED] == 0


class TestDispatchPending:
    async def test_delivers_in_order(self, outbox, deployment_id):
        for name in ["a", "b", "c"]:
            outbox.append(aggregate_id=deployment_id, event_type=name, payload={})
        seen: list[str] = []

        async def deliver(event: OutboxEvent) -> None:
            seen.append(event.event_type)

        assert await dispatch_pending(outbox, deliver) == 3
        assert seen == ["a", "b", "c"]
        assert outbox.count_by_status()[EventStatus.DELIVERED] == 3

    async def test_failed_delivery_does_not_stop_batch(self, outbox, deployment_id):
        bad = outbox.append(aggregate_id=deployment_id, event_type="bad", payload={})
        good = outbox.append(aggregate_id=deployment_id, event_type="good", payload={})

        async def deliver(event: OutboxEvent) -> None:
            if event.event_type == "bad":
                raise ConnectionError("webhook down")

        assert await dispatch_pending(outbox, deliver) == 1
        assert good.status == EventStatus.DELIVERED
        assert bad.status == EventStatus.PENDING
        assert bad.retry_count == 1
        assert bad.error_message == "webhook down"


class TestRetention:
    """Finished events beyond the retention cap are evicted oldest first."""

    def test_delivered_events_are_evicted(self, deployment_id):
        outbox = EventOutbox(retention=2)
        events = [
            outbox.append(aggregate_id=deployment_id, event_type=str(i), payload={})
            for i in range(4)
        ]
        for event in events:
            outbox.mark_processing(event.id)
            outbox.mark_delivered(event.id)

        assert len(outbox) == 2
        assert outbox.get(events[0].id) is None
        assert outbox.get(events[1].id) is None
        assert outbox.get(events[3].id) is events[3]

    def test_dead_letters_count_towards_retention(self, deployment_id):
        outbox = EventOutbox(max_retries=1, retention=1)
        first = outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        second = outbox.append(aggregate_id=deployment_id, event_type="b", payload={})
        outbox.mark_processing(first.id)
        outbox.mark_failed(first.id, error="gone")
        outbox.mark_processing(second.id)
        outbox.mark_delivered(second.id)

        assert outbox.get(first.id) is None
        assert outbox.count_by_status()[EventStatus.DELIVERED] == 1

    def test_pending_events_are_never_evicted(self, deployment_id):
        outbox = EventOutbox(retention=0)
        for i in range(5):
            outbox.append(aggregate_id=deployment_id, event_type=str(i), payload={})
        done = outbox.get_pending(limit=1)[0]
        outbox.mark_processing(done.id)
        outbox.mark_delivered(done.id)

        assert len(outbox) == 4
        assert outbox.count_by_status()[EventStatus.PENDING] == 4


class TestOutboxDispatcher:
    async def test_run_once_drains_batch(self, outbox, deployment_id):
        for name in ["a", "b"]:
            outbox.append(aggregate_id=deployment_id, event_type=name, payload={})
        dispatcher = OutboxDispatcher(outbox, log_deliverer, batch_size=1)

        assert await dispatcher.run_once() == 1
        assert await dispatcher.run_once() == 1
        assert outbox.count_by_status()[EventStatus.PENDING] == 0

    async def test_background_loop_delivers(self, outbox, deployment_id):
        delivered = asyncio.Event()

        async def deliver(event: OutboxEvent) -> None:
            delivered.set()

        dispatcher = OutboxDispatcher(outbox, deliver, interval=0.01)
        dispatcher.start()
        assert dispatcher.running
        outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        await asyncio.wait_for(delivered.wait(), timeout=2.0)
        await dispatcher.stop()

        assert not dispatcher.running
        assert outbox.count_by_status()[EventStatus.DELIVERED] == 1

    async def test_stop_flushes_remaining_events(self, outbox, deployment_id):
        dispatcher = OutboxDispatcher(outbox, log_deliverer, interval=60.0)
        dispatcher.start()
        outbox.append(aggregate_id=deployment_id, event_type="late", payload={})
        await dispatcher.stop()
        assert outbox.count_by_status()[EventStatus.DELIVERED] == 1

    async def test_loop_survives_deliverer_errors(self, outbox, deployment_id):
        attempts = 0
        recovered = asyncio.Event()

        async def deliver(event: OutboxEvent) -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("webhook down")
            recovered.set()

        outbox.append(aggregate_id=deployment_id, event_type="a", payload={})
        dispatcher = OutboxDispatcher(outbox, deliver, interval=0.01)
        dispatcher.start()
        await asyncio.wait_for(recovered.wait(), timeout=2.0)
        await dispatcher.stop()

        event = outbox.events_for(deployment_id)[0]
        assert event.status == EventStatus.DELIVERED
        assert event.retry_count == 1


class TestOutboxNotificationSink:
    async def test_appends_status_change(self, outbox, deployment_id):
        sink = OutboxNotificationSink(outbox)
        with correlation_context("corr-9"):
            await sink.emit_event(
                deployment_id,
                DeploymentStatus.PENDING,
                DeploymentStatus.FAILED,
                "TRANSACTION_REVERTED",
            )

        [event] = outbox.events_for(deployment_id)
        assert event.event_type == "token_deployment.failed"
        assert event.payload["event"] == DEPLOYMENT_STATUS_CHANGED
        assert event.payload["from_status"] == "pending"
        assert event.payload["to_status"] == "failed"
        assert event.payload["reason_code"] == "TRANSACTION_REVERTED"
        assert event.payload["correlation_id"] == "corr-9"
        assert event.payload["occurred_at"]

    async def test_creation_has_no_previous_status(self, outbox, deployment_id):
        sink = OutboxNotificationSink(outbox)
        await sink.emit_event(deployment_id, None, DeploymentStatus.QUEUED, "DEPLOYMENT_CREATED")
        [event] = outbox.events_for(deployment_id)
        assert event.event_type == "token_deployment.started"
        assert event.payload["from_status"] is None
        assert event.payload["correlation_id"] is None

    @pytest.mark.parametrize(
        ("status", "event_type"),
        [
            (DeploymentStatus.SUBMITTED, "token_deployment.started"),
            (DeploymentStatus.CONFIRMED, "token_deployment.confirming"),
            (DeploymentStatus.COMPLETED, "token_deployment.completed"),
            (DeploymentStatus.CANCELLED, "token_deployment.cancelled"),
        ],
    )
    async def test_event_type_per_status(self, outbox, deployment_id, status, event_type):
        await OutboxNotificationSink(outbox).emit_event(deployment_id, None, status, "X")
        assert outbox.events_for(deployment_id)[0].event_type == event_type

    async def test_service_emits_one_event_per_transition(self, store, outbox):
        service = DeploymentStatusService(store, sink=OutboxNotificationSink(outbox))
        deployment_id = await service.create_deployment("ASA", "testnet")
        await service.update_status(
            deployment_id, DeploymentStatus.SUBMITTED, transaction_hash="0x1"
        )
        await service.update_status(deployment_id, DeploymentStatus.SUBMITTED)

        events = outbox.events_for(deployment_id)
        assert [e.payload["to_status"] for e in events] == ["queued", "submitted"]
