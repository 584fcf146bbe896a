"""Payment intent model type definitions for database operations."""

from enum import Enum
from typing import TypedDict


class PaymentIntentStatus(str, Enum):
    """Payment intent status values matching the database enum."""

    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"


class PaymentOutcome(str, Enum):
    """Outcome reported by the payment provider for an intent."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentIntent(TypedDict):
    """Payment intent table row representation.

    References its order by identifier only.
    """

    id: str
    order_id: str
    provider_payment_id: str
    amount_cents: int
    currency: str
    status: str
    client_secret: str
    failure_reason: str | None
    captured_at: str | None
    failed_at: str | None
    created_at: str
    updated_at: str
