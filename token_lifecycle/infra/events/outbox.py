"""Event Outbox for at-least-once deployment notifications.

- OutboxNotificationSink appends one event per accepted status change
- dispatch_pending() hands pending events to a deliverer (webhook client)
- Failed deliveries return to PENDING until max_retries, then FAILED
- OutboxDispatcher drains the outbox in the background of the running app
- Finished (DELIVERED / FAILED) events beyond `retention` are evicted oldest first
- Idempotency via event id dedup on the receiving side
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from token_lifecycle.ports.notification_sink import NotificationSink
from token_lifecycle.shared.trace_context import get_correlation_id
from token_lifecycle.shared.types import DeploymentStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEPLOYMENT_STATUS_CHANGED = "DeploymentStatusChanged"

# Webhook event types per target status
WEBHOOK_EVENT_TYPES: dict[DeploymentStatus, str] = {
    DeploymentStatus.QUEUED: "token_deployment.started",
    DeploymentStatus.SUBMITTED: "token_deployment.started",
    DeploymentStatus.PENDING: "token_deployment.confirming",
    DeploymentStatus.CONFIRMED: "token_deployment.confirming",
    DeploymentStatus.INDEXED: "token_deployment.confirming",
    DeploymentStatus.COMPLETED: "token_deployment.completed",
    DeploymentStatus.FAILED: "token_deployment.failed",
    DeploymentStatus.CANCELLED: "token_deployment.cancelled",
}


class EventStatus(enum.Enum):
    """Outbox event lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class OutboxEvent:
    """An event waiting in (or delivered from) the outbox."""

    id: UUID
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    max_retries: int = 5
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
    error_message: str | None = None


class EventOutbox:
    """In-memory outbox.

    Events keep insertion order; get_pending() returns the oldest first.
    At most `retention` finished events are kept; pending and in-flight
    events are never evicted.
    """

    def __init__(self, *, max_retries: int = 5, retention: int = 1000) -> None:
        self._events: dict[UUID, OutboxEvent] = {}
        self._finished: deque[UUID] = deque()
        self._max_retries = max_retries
        self._retention = max(retention, 0)

    def append(
        self,
        *,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> OutboxEvent:
        """Append a new event to the outbox.

        Args:
            aggregate_id: Deployment id the event belongs to.
            event_type: Event type identifier (e.g. "token_deployment.failed").
            payload: JSON-serializable event data.
            max_retries: Maximum delivery attempts (defaults to the outbox setting).

        Returns:
            The created OutboxEvent.
        """
        event = OutboxEvent(
            id=uuid4(),
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
            max_retries=self._max_retries if max_retries is None else max_retries,
        )
        self._events[event.id] = event
        return event

    def get(self, event_id: UUID) -> OutboxEvent | None:
        return self._events.get(event_id)

    def get_pending(self, *, limit: int = 100) -> list[OutboxEvent]:
        """Fetch pending events for delivery, oldest first."""
        pending = [e for e in self._events.values() if e.status == EventStatus.PENDING]
        return pending[:limit]

    def events_for(self, aggregate_id: str) -> list[OutboxEvent]:
        """All events of one deployment in append order."""
        return [e for e in self._events.values() if e.aggregate_id == aggregate_id]

    def mark_processing(self, event_id: UUID) -> bool:
        """Transition event from PENDING to PROCESSING.

        Returns False if event not found or not in PENDING state.
        """
        event = self._events.get(event_id)
        if not event or event.status != EventStatus.PENDING:
            return False
        event.status = EventStatus.PROCESSING
        return True

    def mark_delivered(self, event_id: UUID) -> bool:
        """Transition event to DELIVERED.

        Returns False if event not found or not in PROCESSING state.
        """
        event = self._events.get(event_id)
        if not event or event.status != EventStatus.PROCESSING:
            return False
        event.status = EventStatus.DELIVERED
        event.processed_at = datetime.now(UTC)
        self._finish(event.id)
        return True

    def mark_failed(self, event_id: UUID, *, error: str = "") -> bool:
        """Mark event as FAILED or return it to PENDING for retry.

        If retry_count < max_retries after incrementing, returns to PENDING.
        Otherwise marks as FAILED permanently.

        Returns False if event not found or not in PROCESSING state.
        """
        event = self._events.get(event_id)
        if not event or event.status != EventStatus.PROCESSING:
            return False

        event.retry_count += 1
        event.error_message = error

        if event.retry_count >= event.max_retries:
            event.status = EventStatus.FAILED
            event.processed_at = datetime.now(UTC)
            self._finish(event.id)
            logger.warning(
                "Outbox event gave up: id=%s type=%s retries=%d",
                event.id,
                event.event_type,
                event.retry_count,
            )
        else:
            event.status = EventStatus.PENDING

        return True

    def count_by_status(self) -> dict[EventStatus, int]:
        """Return event count grouped by status."""
        counts: dict[EventStatus, int] = dict.fromkeys(EventStatus, 0)
        for event in self._events.values():
            counts[event.status] += 1
        return counts

    def __len__(self) -> int:
        return len(self._events)

    def _finish(self, event_id: UUID) -> None:
        self._finished.append(event_id)
        while len(self._finished) > self._retention:
            self._events.pop(self._finished.popleft(), None)


async def dispatch_pending(
    outbox: EventOutbox,
    deliver: Callable[[OutboxEvent], Awaitable[None]],
    *,
    limit: int = 100,
) -> int:
    """Deliver one batch of pending events.

    A deliverer exception marks that event failed (or back to pending);
    the rest of the batch still runs.

    Returns:
        Number of events delivered.
    """
    delivered = 0
    for event in outbox.get_pending(limit=limit):
        if not outbox.mark_processing(event.id):
            continue
        try:
            await deliver(event)
        except Exception as exc:
            logger.warning("Outbox delivery failed: id=%s error=%s", event.id, exc)
            outbox.mark_failed(event.id, error=str(exc))
            continue
        outbox.mark_delivered(event.id)
        delivered += 1
    return delivered


async def log_deliverer(event: OutboxEvent) -> None:
    """Deliverer used when no webhook is configured: the event is only logged."""
    logger.info(
        "Outbox event published: id=%s type=%s deployment=%s",
        event.id,
        event.event_type,
        event.aggregate_id,
    )


class OutboxDispatcher:
    """Drains an EventOutbox on a fixed interval while the app is running.

    start() launches the loop on the running event loop; stop() cancels it
    and runs one last batch so accepted transitions are not left behind.
    """

    def __init__(
        self,
        outbox: EventOutbox,
        deliver: Callable[[OutboxEvent], Awaitable[None]],
        *,
        interval: float = 1.0,
        batch_size: int = 100,
    ) -> None:
        self._outbox = outbox
        self._deliver = deliver
        self._interval = interval
        self._batch_size = batch_size
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        return await dispatch_pending(self._outbox, self._deliver, limit=self._batch_size)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="outbox-dispatcher")
        logger.info("Outbox dispatcher started: interval=%.2fs", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.run_once()
        logger.info("Outbox dispatcher stopped")

    async def _loop(self) -> None:
        while True:
            try:
                delivered = await self.run_once()
            except Exception:
                logger.exception("Outbox dispatch cycle failed")
            else:
                if delivered:
                    logger.debug("Outbox dispatch cycle delivered %d events", delivered)
            await asyncio.sleep(self._interval)


class OutboxNotificationSink(NotificationSink):
    """NotificationSink that records status changes in an EventOutbox."""

    def __init__(self, outbox: EventOutbox) -> None:
        self._outbox = outbox

    async def emit_event(
        self,
        deployment_id: str,
        from_status: DeploymentStatus | None,
        to_status: DeploymentStatus,
        reason_code: str,
    ) -> None:
        event = self._outbox.append(
            aggregate_id=deployment_id,
            event_type=WEBHOOK_EVENT_TYPES[to_status],
            payload={
                "event": DEPLOYMENT_STATUS_CHANGED,
                "deployment_id": deployment_id,
                "from_status": from_status.value if from_status else None,
                "to_status": to_status.value,
                "reason_code": reason_code,
                "correlation_id": get_correlation_id() or None,
                "occurred_at": datetime.now(UTC).isoformat(),
            },
        )
        logger.debug(
            "Outbox event appended: id=%s deployment=%s type=%s",
            event.id,
            deployment_id,
            event.event_type,
        )
