"""Database model type definitions."""

from src.models.idempotency import IdempotencyRecord, IdempotencyStatus
from src.models.order import (
    ActorRole,
    Order,
    OrderItem,
    OrderStatus,
    SelectedModifier,
    StatusHistoryEntry,
)
from src.models.payment import PaymentIntent, PaymentIntentStatus, PaymentOutcome
from src.models.webhook_event import WebhookEvent

__all__ = [
    "ActorRole",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentIntent",
    "PaymentIntentStatus",
    "PaymentOutcome",
    "SelectedModifier",
    "StatusHistoryEntry",
    "WebhookEvent",
]
