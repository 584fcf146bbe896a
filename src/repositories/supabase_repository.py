"""Supabase-backed repositories.

Expected tables (unique constraints are what make the conditional
operations race-free across processes):

    orders            (id uuid pk, customer_id, vendor_id, driver_id, status,
                       items jsonb, total_cents int, currency, address_id,
                       payment_method, status_history jsonb, version int,
                       created_at timestamptz, updated_at timestamptz)
    payment_intents   (id uuid pk, order_id, provider_payment_id text unique,
                       amount_cents int, currency, status, client_secret,
                       failure_reason, captured_at, failed_at, created_at,
                       updated_at)
                      create unique index payment_intents_one_live_per_order
                        on payment_intents (order_id) where status <> 'FAILED'
    webhook_events    (event_id text pk, type, payload jsonb, received_at,
                       processed bool, processed_at, attempts int, last_error,
                       lease_expires_at timestamptz, next_retry_at timestamptz,
                       dead_lettered bool)
    idempotency_keys  (key text, endpoint_fingerprint text, request_hash,
                       status, result_snapshot jsonb, created_at, expires_at,
                       unique (key, endpoint_fingerprint))
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.models.idempotency import IdempotencyRecord
from src.models.order import ACTIVE_DELIVERY_STATUSES, Order
from src.models.payment import PaymentIntent
from src.models.webhook_event import WebhookEvent
from src.repositories.interface import DuplicateRecordError, StaleWriteError

logger = logging.getLogger(__name__)

# PostgreSQL unique_violation
UNIQUE_VIOLATION = "23505"


def _is_unique_violation(error: PostgrestAPIError) -> bool:
    return str(getattr(error, "code", "")) == UNIQUE_VIOLATION


class SupabaseOrderRepository:
    """Orders stored in the ``orders`` table with optimistic versioning."""

    table = "orders"

    def __init__(self, client: Client) -> None:
        self.client = client

    async def insert(self, order: Order) -> Order:
        try:
            response = self.client.table(self.table).insert(dict(order)).execute()
        except PostgrestAPIError as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(f"Order {order['id']} already exists") from e
            raise
        return response.data[0]

    async def get(self, order_id: str) -> Order | None:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("id", order_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def update(self, order: Order, expected_version: int) -> Order:
        changes = {k: v for k, v in order.items() if k not in ("id", "created_at")}
        response = (
            self.client.table(self.table)
            .update(changes)
            .eq("id", order["id"])
            .eq("version", expected_version)
            .execute()
        )
        if not response.data:
            raise StaleWriteError("order", order["id"], expected_version)
        return response.data[0]

    async def count_active_for_driver(self, driver_id: str) -> int:
        response = (
            self.client.table(self.table)
            .select("id", count="exact")
            .eq("driver_id", driver_id)
            .in_("status", [status.value for status in ACTIVE_DELIVERY_STATUSES])
            .execute()
        )
        return response.count or 0


class SupabasePaymentIntentRepository:
    """Payment intents stored in the ``payment_intents`` table."""

    table = "payment_intents"

    def __init__(self, client: Client) -> None:
        self.client = client

    async def insert(self, intent: PaymentIntent) -> PaymentIntent:
        try:
            response = self.client.table(self.table).insert(dict(intent)).execute()
        except PostgrestAPIError as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(
                    f"Payment intent for order {intent['order_id']} conflicts with an existing intent"
                ) from e
            raise
        return response.data[0]

    async def get(self, intent_id: str) -> PaymentIntent | None:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("id", intent_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def get_by_provider_payment_id(self, provider_payment_id: str) -> PaymentIntent | None:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("provider_payment_id", provider_payment_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def list_for_order(self, order_id: str) -> list[PaymentIntent]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("order_id", order_id)
            .order("created_at")
            .execute()
        )
        return response.data or []

    async def transition_status(
        self,
        intent_id: str,
        from_status: str,
        to_status: str,
        changes: dict[str, Any] | None = None,
    ) -> PaymentIntent | None:
        update_data = {**(changes or {}), "status": to_status}
        response = (
            self.client.table(self.table)
            .update(update_data)
            .eq("id", intent_id)
            .eq("status", from_status)
            .execute()
        )
        return response.data[0] if response.data else None


class SupabaseWebhookEventRepository:
    """Webhook ledger stored in ``webhook_events`` (event_id is the primary key)."""

    table = "webhook_events"

    def __init__(self, client: Client) -> None:
        self.client = client

    async def try_insert(self, event: WebhookEvent) -> bool:
        try:
            self.client.table(self.table).insert(dict(event)).execute()
        except PostgrestAPIError as e:
            if _is_unique_violation(e):
                logger.debug("Webhook event %s already in ledger", event["event_id"])
                return False
            raise
        return True

    async def get(self, event_id: str) -> WebhookEvent | None:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("event_id", event_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def try_claim(self, event_id: str, now: datetime, lease_expires_at: datetime) -> WebhookEvent | None:
        response = (
            self.client.table(self.table)
            .update({"lease_expires_at": lease_expires_at.isoformat()})
            .eq("event_id", event_id)
            .eq("processed", False)
            .eq("dead_lettered", False)
            .lte("lease_expires_at", now.isoformat())
            .execute()
        )
        return response.data[0] if response.data else None

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        self.client.table(self.table).update(
            {"processed": True, "processed_at": processed_at.isoformat(), "next_retry_at": None}
        ).eq("event_id", event_id).execute()

    async def record_failure(
        self,
        event_id: str,
        attempts: int,
        error: str,
        released_at: datetime,
        next_retry_at: datetime | None,
        dead_lettered: bool,
    ) -> None:
        self.client.table(self.table).update(
            {
                "attempts": attempts,
                "last_error": error,
                "lease_expires_at": released_at.isoformat(),
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                "dead_lettered": dead_lettered,
            }
        ).eq("event_id", event_id).execute()

    async def list_due_for_retry(self, now: datetime, limit: int = 50) -> list[WebhookEvent]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("processed", False)
            .eq("dead_lettered", False)
            .lte("next_retry_at", now.isoformat())
            .order("next_retry_at")
            .limit(limit)
            .execute()
        )
        return response.data or []

    async def prune_processed(self, received_before: datetime) -> int:
        response = (
            self.client.table(self.table)
            .delete()
            .or_("processed.eq.true,dead_lettered.eq.true")
            .lt("received_at", received_before.isoformat())
            .execute()
        )
        return len(response.data) if response.data else 0


class SupabaseIdempotencyRepository:
    """Idempotency records in ``idempotency_keys`` with a unique (key, fingerprint)."""

    table = "idempotency_keys"

    def __init__(self, client: Client) -> None:
        self.client = client

    async def try_reserve(self, record: IdempotencyRecord, now: datetime) -> bool:
        # Expired rows would otherwise block the unique constraint forever
        (
            self.client.table(self.table)
            .delete()
            .eq("key", record["key"])
            .eq("endpoint_fingerprint", record["endpoint_fingerprint"])
            .lte("expires_at", now.isoformat())
            .execute()
        )
        try:
            self.client.table(self.table).insert(dict(record)).execute()
        except PostgrestAPIError as e:
            if _is_unique_violation(e):
                return False
            raise
        return True

    async def get(self, key: str, endpoint_fingerprint: str) -> IdempotencyRecord | None:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("key", key)
            .eq("endpoint_fingerprint", endpoint_fingerprint)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def complete(self, key: str, endpoint_fingerprint: str, result_snapshot: dict[str, Any]) -> None:
        self.client.table(self.table).update(
            {"status": "completed", "result_snapshot": result_snapshot}
        ).eq("key", key).eq("endpoint_fingerprint", endpoint_fingerprint).execute()

    async def release(self, key: str, endpoint_fingerprint: str) -> None:
        (
            self.client.table(self.table)
            .delete()
            .eq("key", key)
            .eq("endpoint_fingerprint", endpoint_fingerprint)
            .eq("status", "in_progress")
            .execute()
        )

    async def prune_expired(self, now: datetime) -> int:
        response = (
            self.client.table(self.table)
            .delete()
            .lte("expires_at", now.isoformat())
            .execute()
        )
        return len(response.data) if response.data else 0
