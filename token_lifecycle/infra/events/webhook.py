"""Webhook deliverer for outbox events.

POSTs each event as JSON to a single configured URL. A non-2xx response or
a transport error raises, which dispatch_pending() records as a failed
delivery attempt. Receivers dedupe on the X-Event-Id header.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from token_lifecycle.infra.events.outbox import OutboxEvent

logger = logging.getLogger(__name__)


class WebhookDeliverer:
    """Callable deliverer backed by an httpx.AsyncClient."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def __call__(self, event: OutboxEvent) -> None:
        response = await self._client.post(
            self._url,
            json={
                "id": str(event.id),
                "event_type": event.event_type,
                "aggregate_id": event.aggregate_id,
                "created_at": event.created_at.isoformat(),
                "payload": event.payload,
            },
            headers={"X-Event-Id": str(event.id), "X-Event-Type": event.event_type},
        )
        response.raise_for_status()
        logger.debug(
            "Webhook delivered: id=%s status=%d",
            event.id,
            response.status_code,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
