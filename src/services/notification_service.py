"""Order status notifications.

Notifications are best-effort: dispatch never blocks or fails the
transition that triggered it.
"""

import asyncio
import logging
from typing import Any, Protocol

import httpx

from src.models.order import Order

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers order status changes to customers, vendors and drivers."""

    async def notify_status_change(self, order: Order) -> None:
        ...


def build_notification(order: Order) -> dict[str, Any]:
    """Payload describing the order's latest status change."""
    latest = order["status_history"][-1] if order["status_history"] else None
    return {
        "orderId": order["id"],
        "status": order["status"],
        "customerId": order["customer_id"],
        "vendorId": order["vendor_id"],
        "driverId": order.get("driver_id"),
        "note": latest["note"] if latest else None,
        "timestamp": latest["timestamp"] if latest else order["updated_at"],
    }


class LoggingNotifier:
    """Notifier that only writes to the application log."""

    async def notify_status_change(self, order: Order) -> None:
        logger.info("Notify: order %s is now %s", order["id"], order["status"])


class HttpNotifier:
    """Posts status changes to an external notification service."""

    def __init__(self, url: str, timeout: float = 3.0, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify_status_change(self, order: Order) -> None:
        payload = build_notification(order)
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()


class NotificationDispatcher:
    """Schedules notifier calls as background tasks.

    Keeps a reference to each pending task until it finishes so it is not
    garbage collected mid-flight.
    """

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, order: Order) -> asyncio.Task:
        """Fire-and-forget notification for the order's current status."""
        task = asyncio.create_task(self._send(order))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, order: Order) -> None:
        try:
            await self.notifier.notify_status_change(order)
        except Exception as e:
            logger.warning("Notification for order %s (%s) failed: %s", order["id"], order["status"], e)

    async def drain(self) -> None:
        """Wait for in-flight notifications, used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
