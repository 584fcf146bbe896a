"""Order model type definitions for database operations."""

from enum import Enum
from typing import TypedDict


class OrderStatus(str, Enum):
    """Order lifecycle status values matching the database enum."""

    PLACED = "PLACED"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    ENROUTE = "ENROUTE"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check whether no further transitions are possible."""
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class ActorRole(str, Enum):
    """Roles that may act on an order."""

    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# Statuses in which a driver is holding a delivery
ACTIVE_DELIVERY_STATUSES = (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.ENROUTE)


class SelectedModifier(TypedDict):
    """A priced modifier chosen for a line item."""

    name: str
    price_cents: int


class OrderItem(TypedDict):
    """Structure for a single line item in an order.

    Stored as part of the items JSONB array.
    """

    menu_item_id: str
    name: str
    quantity: int
    unit_price_cents: int
    selected_modifiers: list[SelectedModifier]
    line_total_cents: int


class StatusHistoryEntry(TypedDict):
    """One append-only audit entry, written per transition."""

    status: str
    note: str | None
    actor_id: str | None
    actor_role: str | None
    timestamp: str


class Order(TypedDict):
    """Order table row representation.

    Items and status history are owned by the order and stored inline.
    """

    id: str
    customer_id: str
    vendor_id: str
    driver_id: str | None
    status: str
    items: list[OrderItem]
    total_cents: int
    currency: str
    address_id: str | None
    payment_method: str | None
    status_history: list[StatusHistoryEntry]
    version: int
    created_at: str
    updated_at: str
