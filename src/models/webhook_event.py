"""Webhook event ledger row definitions."""

from typing import Any, TypedDict


class WebhookEvent(TypedDict):
    """Deduplication ledger row keyed by the provider event id.

    A row holding an unexpired lease is being applied by some delivery;
    rows with processed=False and an expired lease are eligible for retry.
    """

    event_id: str
    type: str
    payload: dict[str, Any]
    received_at: str
    processed: bool
    processed_at: str | None
    attempts: int
    last_error: str | None
    lease_expires_at: str
    next_retry_at: str | None
    dead_lettered: bool
