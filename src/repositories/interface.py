"""Storage contracts shared by the in-memory and Supabase backends.

Every mutation that must be race-free is expressed as a conditional
operation (insert-if-absent, compare-and-set) so the storage layer, not the
caller, arbitrates concurrent writers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from src.models.idempotency import IdempotencyRecord
from src.models.order import Order
from src.models.payment import PaymentIntent
from src.models.webhook_event import WebhookEvent


class StaleWriteError(Exception):
    """Raised when a compare-and-set update finds a newer version stored."""

    def __init__(self, resource: str, resource_id: str, expected_version: int) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        super().__init__(f"{resource} {resource_id} was modified (expected version {expected_version})")


class DuplicateRecordError(Exception):
    """Raised when an insert collides with a unique key."""


class OrderRepository(Protocol):
    """Persistence for orders, including their items and status history."""

    async def insert(self, order: Order) -> Order:
        """Store a new order."""
        ...

    async def get(self, order_id: str) -> Order | None:
        """Fetch an order by id."""
        ...

    async def update(self, order: Order, expected_version: int) -> Order:
        """Replace an order if its stored version equals ``expected_version``.

        Raises:
            StaleWriteError: If another writer got there first.
        """
        ...

    async def count_active_for_driver(self, driver_id: str) -> int:
        """Count orders the driver currently holds (ASSIGNED..ENROUTE)."""
        ...


class PaymentIntentRepository(Protocol):
    """Persistence for payment intents."""

    async def insert(self, intent: PaymentIntent) -> PaymentIntent:
        """Store a new intent.

        Raises:
            DuplicateRecordError: If the provider payment id already exists,
                or the order already has an intent that is not FAILED.
        """
        ...

    async def get(self, intent_id: str) -> PaymentIntent | None:
        """Fetch an intent by id."""
        ...

    async def get_by_provider_payment_id(self, provider_payment_id: str) -> PaymentIntent | None:
        """Fetch an intent by the provider's payment id."""
        ...

    async def list_for_order(self, order_id: str) -> list[PaymentIntent]:
        """All intents for an order, oldest first."""
        ...

    async def transition_status(
        self,
        intent_id: str,
        from_status: str,
        to_status: str,
        changes: dict[str, Any] | None = None,
    ) -> PaymentIntent | None:
        """Move an intent between statuses only if it is still in ``from_status``.

        Returns:
            The updated intent, or None if the intent was not in ``from_status``.
        """
        ...


class WebhookEventRepository(Protocol):
    """Deduplication ledger for provider webhook deliveries."""

    async def try_insert(self, event: WebhookEvent) -> bool:
        """Insert the ledger row unless ``event_id`` already exists.

        Returns:
            True if this call created the row.
        """
        ...

    async def get(self, event_id: str) -> WebhookEvent | None:
        """Fetch a ledger row."""
        ...

    async def try_claim(self, event_id: str, now: datetime, lease_expires_at: datetime) -> WebhookEvent | None:
        """Take the apply lease on an unprocessed row whose lease has expired.

        Returns:
            The claimed row, or None if it is processed, dead-lettered or
            leased by another delivery.
        """
        ...

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        """Record that the event's effect has been applied."""
        ...

    async def record_failure(
        self,
        event_id: str,
        attempts: int,
        error: str,
        released_at: datetime,
        next_retry_at: datetime | None,
        dead_lettered: bool,
    ) -> None:
        """Release the lease after a failed apply and schedule the next attempt."""
        ...

    async def list_due_for_retry(self, now: datetime, limit: int = 50) -> list[WebhookEvent]:
        """Unprocessed rows whose retry time has passed."""
        ...

    async def prune_processed(self, received_before: datetime) -> int:
        """Delete processed or dead-lettered rows received before the cutoff."""
        ...


class IdempotencyRepository(Protocol):
    """Stored results keyed by (idempotency key, endpoint fingerprint)."""

    async def try_reserve(self, record: IdempotencyRecord, now: datetime) -> bool:
        """Insert an in-progress reservation unless a live one exists.

        Expired records for the same pair are replaced.

        Returns:
            True if this call owns the reservation.
        """
        ...

    async def get(self, key: str, endpoint_fingerprint: str) -> IdempotencyRecord | None:
        """Fetch the record for a pair."""
        ...

    async def complete(self, key: str, endpoint_fingerprint: str, result_snapshot: dict[str, Any]) -> None:
        """Store the result of the reserved execution."""
        ...

    async def release(self, key: str, endpoint_fingerprint: str) -> None:
        """Drop an in-progress reservation after the operation failed."""
        ...

    async def prune_expired(self, now: datetime) -> int:
        """Delete records whose retention window has elapsed."""
        ...
