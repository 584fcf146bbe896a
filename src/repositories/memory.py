"""Thread-safe in-memory repositories.

Used for local development and tests. Each store guards its dict with a
single lock, which makes every conditional operation atomic.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from threading import Lock
from typing import Any

from src.models.idempotency import IdempotencyRecord
from src.models.order import ACTIVE_DELIVERY_STATUSES, Order
from src.models.payment import PaymentIntent, PaymentIntentStatus
from src.models.webhook_event import WebhookEvent
from src.repositories.interface import DuplicateRecordError, StaleWriteError

logger = logging.getLogger(__name__)


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class InMemoryOrderRepository:
    """Order storage backed by a dict keyed by order id."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = Lock()

    async def insert(self, order: Order) -> Order:
        with self._lock:
            if order["id"] in self._orders:
                raise DuplicateRecordError(f"Order {order['id']} already exists")
            self._orders[order["id"]] = copy.deepcopy(order)
            return copy.deepcopy(order)

    async def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    async def update(self, order: Order, expected_version: int) -> Order:
        with self._lock:
            stored = self._orders.get(order["id"])
            if stored is None or stored["version"] != expected_version:
                raise StaleWriteError("order", order["id"], expected_version)
            self._orders[order["id"]] = copy.deepcopy(order)
            return copy.deepcopy(order)

    async def count_active_for_driver(self, driver_id: str) -> int:
        active = {status.value for status in ACTIVE_DELIVERY_STATUSES}
        with self._lock:
            return sum(
                1
                for order in self._orders.values()
                if order.get("driver_id") == driver_id and order["status"] in active
            )


class InMemoryPaymentIntentRepository:
    """Payment intent storage.

    Mirrors the table's unique provider payment id and its partial unique
    index allowing one non-FAILED intent per order.
    """

    def __init__(self) -> None:
        self._intents: dict[str, PaymentIntent] = {}
        self._by_provider_id: dict[str, str] = {}
        self._lock = Lock()

    async def insert(self, intent: PaymentIntent) -> PaymentIntent:
        with self._lock:
            if intent["provider_payment_id"] in self._by_provider_id:
                raise DuplicateRecordError(
                    f"Provider payment id {intent['provider_payment_id']} already exists"
                )
            failed = PaymentIntentStatus.FAILED.value
            if intent["status"] != failed and any(
                existing["order_id"] == intent["order_id"] and existing["status"] != failed
                for existing in self._intents.values()
            ):
                raise DuplicateRecordError(f"Order {intent['order_id']} already has a live payment intent")
            self._intents[intent["id"]] = copy.deepcopy(intent)
            self._by_provider_id[intent["provider_payment_id"]] = intent["id"]
            return copy.deepcopy(intent)

    async def get(self, intent_id: str) -> PaymentIntent | None:
        with self._lock:
            intent = self._intents.get(intent_id)
            return copy.deepcopy(intent) if intent else None

    async def get_by_provider_payment_id(self, provider_payment_id: str) -> PaymentIntent | None:
        with self._lock:
            intent_id = self._by_provider_id.get(provider_payment_id)
            return copy.deepcopy(self._intents[intent_id]) if intent_id else None

    async def list_for_order(self, order_id: str) -> list[PaymentIntent]:
        with self._lock:
            intents = [copy.deepcopy(i) for i in self._intents.values() if i["order_id"] == order_id]
        return sorted(intents, key=lambda i: i["created_at"])

    async def transition_status(
        self,
        intent_id: str,
        from_status: str,
        to_status: str,
        changes: dict[str, Any] | None = None,
    ) -> PaymentIntent | None:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None or intent["status"] != from_status:
                return None
            intent.update(changes or {})
            intent["status"] = to_status
            return copy.deepcopy(intent)


class InMemoryWebhookEventRepository:
    """Webhook ledger where ``event_id`` is the unique key."""

    def __init__(self) -> None:
        self._events: dict[str, WebhookEvent] = {}
        self._lock = Lock()

    async def try_insert(self, event: WebhookEvent) -> bool:
        with self._lock:
            if event["event_id"] in self._events:
                return False
            self._events[event["event_id"]] = copy.deepcopy(event)
            return True

    async def get(self, event_id: str) -> WebhookEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    async def try_claim(self, event_id: str, now: datetime, lease_expires_at: datetime) -> WebhookEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event["processed"] or event["dead_lettered"]:
                return None
            if _parse(event["lease_expires_at"]) > now:
                return None
            event["lease_expires_at"] = lease_expires_at.isoformat()
            return copy.deepcopy(event)

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is not None:
                event["processed"] = True
                event["processed_at"] = processed_at.isoformat()
                event["next_retry_at"] = None

    async def record_failure(
        self,
        event_id: str,
        attempts: int,
        error: str,
        released_at: datetime,
        next_retry_at: datetime | None,
        dead_lettered: bool,
    ) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is not None:
                event["attempts"] = attempts
                event["last_error"] = error
                event["lease_expires_at"] = released_at.isoformat()
                event["next_retry_at"] = next_retry_at.isoformat() if next_retry_at else None
                event["dead_lettered"] = dead_lettered

    async def list_due_for_retry(self, now: datetime, limit: int = 50) -> list[WebhookEvent]:
        with self._lock:
            due = [
                copy.deepcopy(event)
                for event in self._events.values()
                if not event["processed"]
                and not event["dead_lettered"]
                and event["next_retry_at"] is not None
                and _parse(event["next_retry_at"]) <= now
            ]
        due.sort(key=lambda e: e["next_retry_at"])
        return due[:limit]

    async def prune_processed(self, received_before: datetime) -> int:
        with self._lock:
            stale = [
                event_id
                for event_id, event in self._events.items()
                if (event["processed"] or event["dead_lettered"])
                and _parse(event["received_at"]) < received_before
            ]
            for event_id in stale:
                del self._events[event_id]
        return len(stale)


class InMemoryIdempotencyRepository:
    """Idempotency records keyed by (key, endpoint fingerprint)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], IdempotencyRecord] = {}
        self._lock = Lock()

    async def try_reserve(self, record: IdempotencyRecord, now: datetime) -> bool:
        pair = (record["key"], record["endpoint_fingerprint"])
        with self._lock:
            existing = self._records.get(pair)
            if existing is not None and _parse(existing["expires_at"]) > now:
                return False
            self._records[pair] = copy.deepcopy(record)
            return True

    async def get(self, key: str, endpoint_fingerprint: str) -> IdempotencyRecord | None:
        with self._lock:
            record = self._records.get((key, endpoint_fingerprint))
            return copy.deepcopy(record) if record else None

    async def complete(self, key: str, endpoint_fingerprint: str, result_snapshot: dict[str, Any]) -> None:
        with self._lock:
            record = self._records.get((key, endpoint_fingerprint))
            if record is not None:
                record["status"] = "completed"
                record["result_snapshot"] = copy.deepcopy(result_snapshot)

    async def release(self, key: str, endpoint_fingerprint: str) -> None:
        with self._lock:
            record = self._records.get((key, endpoint_fingerprint))
            if record is not None and record["status"] == "in_progress":
                del self._records[(key, endpoint_fingerprint)]

    async def prune_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [pair for pair, record in self._records.items() if _parse(record["expires_at"]) <= now]
            for pair in expired:
                del self._records[pair]
        return len(expired)
