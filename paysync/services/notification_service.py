"""Outbound notifications to the messaging collaborator.

Delivery is fire-and-forget: callers never wait on it and delivery
failures are logged, not raised.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx

from paysync.config import settings
from paysync.domain.booking_state import BookingState

logger = logging.getLogger(__name__)


class NotificationService:
    """Emits booking lifecycle events to an external messaging service."""

    # Notification types
    BOOKING_APPROVED = "booking_approved"
    BOOKING_PAID = "booking_paid"
    BOOKING_CANCELLED = "booking_cancelled"

    NOTIFY_ON = {
        BookingState.APPROVED: BOOKING_APPROVED,
        BookingState.PAID: BOOKING_PAID,
        BookingState.CANCELLED: BOOKING_CANCELLED,
    }

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._http_client: httpx.AsyncClient | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def close(self) -> None:
        """Wait for in-flight deliveries, then close the HTTP client."""
        await self.drain()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def notify_transition(
        self,
        booking_id: UUID,
        booking_state: str,
        **data: Any,
    ) -> asyncio.Task | None:
        """Emit a notification if ``booking_state`` is one worth announcing."""
        event_type = self.NOTIFY_ON.get(BookingState(booking_state))
        if event_type is None:
            return None
        return self.emit(event_type, {"booking_id": str(booking_id), "state": booking_state, **data})

    def emit(self, event_type: str, payload: dict[str, Any]) -> asyncio.Task | None:
        """Schedule delivery and return immediately."""
        if not self.webhook_url:
            logger.info(f"Notification {event_type} (no collaborator configured): {payload}")
            return None
        task = asyncio.create_task(self._deliver(event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, event_type: str, payload: dict[str, Any]) -> bool:
        body = {
            "type": event_type,
            "data": payload,
            "emitted_at": datetime.now(UTC).isoformat(),
        }
        try:
            response = await self.http_client.post(self.webhook_url, json=body)
            response.raise_for_status()
            logger.debug(f"Notification {event_type} delivered")
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Notification {event_type} delivery failed: {e}")
            return False


notification_service = NotificationService()
