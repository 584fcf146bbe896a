"""Order lifecycle business logic service."""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from src.api.middleware.error_handler import (
    AuthorizationError,
    InvalidOrderError,
    InvalidTransitionError,
    NotFoundError,
    OrderBusyError,
)
from src.core.locks import KeyedLock, LockTimeoutError
from src.models.order import ActorRole, Order, OrderItem, OrderStatus, SelectedModifier, StatusHistoryEntry
from src.repositories.interface import OrderRepository, StaleWriteError
from src.schemas.auth import UserContext
from src.schemas.common import utcnow
from src.schemas.order import OrderCreate
from src.services.menu_catalog_service import MenuCatalog
from src.services.notification_service import NotificationDispatcher
from src.services.order_state_machine import NOTIFY_ON, OrderStateMachine

if TYPE_CHECKING:
    from src.services.payment_service import PaymentIntentTracker

logger = logging.getLogger(__name__)


def is_party(order: Order, actor: UserContext) -> bool:
    """Check whether the actor may see the order."""
    if actor.is_admin:
        return True
    if actor.role == ActorRole.CUSTOMER:
        return order["customer_id"] == actor.user_id
    if actor.role == ActorRole.VENDOR:
        return order["vendor_id"] == actor.user_id
    if actor.role == ActorRole.DRIVER:
        return order.get("driver_id") == actor.user_id
    return False


def history_entry(status: OrderStatus, actor: UserContext, note: str | None, timestamp: str) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        status=status.value,
        note=note,
        actor_id=actor.user_id,
        actor_role=actor.role.value,
        timestamp=timestamp,
    )


class OrderService:
    """Service for creating orders and moving them through their lifecycle.

    Every mutation holds the order's lock across read-validate-write, and
    the repository write is a compare-and-set on the order version.
    """

    def __init__(
        self,
        orders: OrderRepository,
        catalog: MenuCatalog,
        notifications: NotificationDispatcher,
        state_machine: OrderStateMachine,
        locks: KeyedLock | None = None,
        payments: "PaymentIntentTracker | None" = None,
        lock_timeout: float = 2.0,
        default_currency: str = "USD",
    ) -> None:
        """Initialize order service with its collaborators.

        Args:
            orders: Order storage.
            catalog: Menu catalog used to price line items.
            notifications: Dispatcher for status change notifications.
            state_machine: Edge and role rules.
            locks: Per-order locks, shared with driver assignment.
            payments: Payment tracker consulted before forward transitions.
            lock_timeout: Seconds to wait for an order's lock.
            default_currency: Currency recorded on new orders.
        """
        self.orders = orders
        self.catalog = catalog
        self.notifications = notifications
        self.state_machine = state_machine
        self.locks = locks or KeyedLock()
        self.payments = payments
        self.lock_timeout = lock_timeout
        self.default_currency = default_currency

    @asynccontextmanager
    async def order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Hold the order's lock, failing with OrderBusyError on timeout."""
        try:
            async with self.locks.acquire(f"order:{order_id}", self.lock_timeout):
                yield
        except LockTimeoutError as e:
            raise OrderBusyError(order_id, retry_after=max(1, round(self.lock_timeout))) from e

    async def load(self, order_id: str) -> Order:
        """Fetch an order or raise NotFoundError."""
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def create_order(self, customer: UserContext, request: OrderCreate) -> Order:
        """Price the requested items and store a new order at PLACED.

        Args:
            customer: Actor placing the order.
            request: Requested items, address and payment method.

        Returns:
            Order: The stored order.

        Raises:
            InvalidOrderError: If items are empty, unknown, unavailable,
                from more than one vendor, or total to nothing.
        """
        if not request.items:
            raise InvalidOrderError("Order must contain at least one item")

        menu = await self.catalog.get_items([item.menu_item_id for item in request.items])

        missing = sorted({item.menu_item_id for item in request.items if item.menu_item_id not in menu})
        if missing:
            raise InvalidOrderError(
                "Unknown menu items",
                details=[{"loc": ["items"], "msg": f"Menu item not found: {item_id}", "type": "not_found"} for item_id in missing],
            )

        vendor_ids = {menu[item.menu_item_id]["vendor_id"] for item in request.items}
        if len(vendor_ids) > 1:
            raise InvalidOrderError("All items must be from the same vendor")

        items: list[OrderItem] = []
        for index, requested in enumerate(request.items):
            menu_item = menu[requested.menu_item_id]
            if not menu_item["available"]:
                raise InvalidOrderError(f"Menu item not available: {menu_item['name']}")
            if requested.quantity < 1:
                raise InvalidOrderError(f"Quantity must be at least 1 for {menu_item['name']}")

            offered = {m["name"]: m["price_cents"] for m in menu_item["modifiers"]}
            modifiers: list[SelectedModifier] = []
            for name in requested.selected_modifiers:
                if name not in offered:
                    raise InvalidOrderError(
                        f"Modifier {name!r} is not offered for {menu_item['name']}",
                        details=[{"loc": ["items", index, "selectedModifiers"], "msg": name, "type": "invalid_modifier"}],
                    )
                modifiers.append(SelectedModifier(name=name, price_cents=offered[name]))

            unit_total = menu_item["price_cents"] + sum(m["price_cents"] for m in modifiers)
            items.append(
                OrderItem(
                    menu_item_id=menu_item["id"],
                    name=menu_item["name"],
                    quantity=requested.quantity,
                    unit_price_cents=menu_item["price_cents"],
                    selected_modifiers=modifiers,
                    line_total_cents=unit_total * requested.quantity,
                )
            )

        total_cents = sum(item["line_total_cents"] for item in items)
        if total_cents <= 0:
            raise InvalidOrderError("Order total must be greater than zero")

        now = utcnow().isoformat()
        order = Order(
            id=str(uuid.uuid4()),
            customer_id=customer.user_id,
            vendor_id=vendor_ids.pop(),
            driver_id=None,
            status=OrderStatus.PLACED.value,
            items=items,
            total_cents=total_cents,
            currency=self.default_currency,
            address_id=request.address_id,
            payment_method=request.payment_method,
            status_history=[history_entry(OrderStatus.PLACED, customer, "Order placed", now)],
            version=1,
            created_at=now,
            updated_at=now,
        )
        stored = await self.orders.insert(order)
        logger.info(
            "Order %s placed by %s with %d items (total %d cents)",
            stored["id"],
            customer.user_id,
            len(items),
            total_cents,
        )
        return stored

    def check_access(self, order: Order, actor: UserContext) -> None:
        if not is_party(order, actor):
            raise AuthorizationError("You do not have access to this order")

    async def get_order(self, order_id: str, actor: UserContext) -> Order:
        """Fetch an order the actor is a party to."""
        order = await self.load(order_id)
        self.check_access(order, actor)
        return order

    async def get_status_history(self, order_id: str, actor: UserContext) -> list[StatusHistoryEntry]:
        """Fetch an order's audit trail, oldest first."""
        order = await self.get_order(order_id, actor)
        return order["status_history"]

    async def commit_transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: UserContext,
        note: str | None,
        changes: dict[str, Any] | None = None,
    ) -> Order:
        """Persist a validated transition and dispatch its notification.

        Must be called with the order's lock held.
        """
        now = utcnow().isoformat()
        updated: Order = {
            **order,
            **(changes or {}),
            "status": target.value,
            "status_history": [*order["status_history"], history_entry(target, actor, note, now)],
            "version": order["version"] + 1,
            "updated_at": now,
        }
        try:
            stored = await self.orders.update(updated, expected_version=order["version"])
        except StaleWriteError as e:
            logger.warning("Concurrent write on order %s: %s", order["id"], e)
            raise OrderBusyError(order["id"]) from e

        logger.info(
            "Order %s: %s -> %s by %s %s",
            order["id"],
            order["status"],
            target.value,
            actor.role.value,
            actor.user_id,
        )
        if target in NOTIFY_ON:
            self.notifications.dispatch(stored)
        return stored

    async def transition(
        self,
        order_id: str,
        requested_status: OrderStatus,
        actor: UserContext,
        note: str | None = None,
    ) -> Order:
        """Move an order along one lifecycle edge.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If the actor may not act on this order or edge.
            InvalidTransitionError: If the edge does not exist.
            PaymentRequiredError: If the payment gate blocks a forward edge.
            OrderBusyError: If the order is locked by another request.
        """
        async with self.order_lock(order_id):
            order = await self.load(order_id)
            self.check_access(order, actor)

            current = OrderStatus(order["status"])
            if requested_status == OrderStatus.ASSIGNED and not current.is_terminal:
                raise InvalidTransitionError(
                    current.value,
                    requested_status.value,
                    "drivers are assigned through the assignment endpoint",
                )
            self.state_machine.validate_transition(current, requested_status, actor.role)

            if requested_status != OrderStatus.CANCELLED and self.payments is not None:
                await self.payments.fulfillment_gate(order)

            return await self.commit_transition(order, requested_status, actor, note)

    async def accept(self, order_id: str, actor: UserContext) -> Order:
        """Vendor accepts a placed order."""
        return await self.transition(order_id, OrderStatus.ACCEPTED, actor, note="Order accepted by vendor")

    async def cancel(self, order_id: str, actor: UserContext, reason: str | None = None) -> Order:
        """Cancel an order, subject to the cancellation policy."""
        return await self.transition(order_id, OrderStatus.CANCELLED, actor, note=reason or "Order cancelled")
