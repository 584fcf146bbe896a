"""Order request/response schemas."""

from pydantic import Field, field_validator

from src.models.order import OrderStatus
from src.schemas.common import CamelModel


class OrderItemRequest(CamelModel):
    """A line item as requested by the customer; prices come from the catalog."""

    menu_item_id: str = Field(min_length=1, description="Menu item identifier")
    quantity: int = Field(ge=1, le=100, description="Number of units")
    selected_modifiers: list[str] = Field(default_factory=list, description="Names of chosen modifiers")


class OrderCreate(CamelModel):
    """Request schema for placing an order."""

    items: list[OrderItemRequest] = Field(description="Line items, all from one vendor")
    address_id: str | None = Field(default=None, description="Delivery address identifier")
    payment_method: str | None = Field(default=None, max_length=50, description="e.g. card, cash")


class StatusUpdate(CamelModel):
    """Request schema for advancing an order's status."""

    status: OrderStatus = Field(description="Requested target status")
    note: str | None = Field(default=None, max_length=500, description="Optional audit note")

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class CancelRequest(CamelModel):
    """Request schema for cancelling an order."""

    reason: str | None = Field(default=None, max_length=500, description="Why the order is cancelled")


class SelectedModifierResponse(CamelModel):
    """Priced modifier on a line item."""

    name: str
    price_cents: int


class OrderItemResponse(CamelModel):
    """Priced line item as stored on the order."""

    menu_item_id: str
    name: str
    quantity: int
    unit_price_cents: int
    selected_modifiers: list[SelectedModifierResponse] = Field(default_factory=list)
    line_total_cents: int


class StatusHistoryResponse(CamelModel):
    """One entry of an order's audit trail."""

    status: OrderStatus
    note: str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    timestamp: str


class OrderResponse(CamelModel):
    """Response schema for an order."""

    id: str
    customer_id: str
    vendor_id: str
    driver_id: str | None = None
    status: OrderStatus
    items: list[OrderItemResponse]
    total_cents: int
    currency: str
    address_id: str | None = None
    payment_method: str | None = None
    status_history: list[StatusHistoryResponse] = Field(default_factory=list)
    version: int
    created_at: str
    updated_at: str
