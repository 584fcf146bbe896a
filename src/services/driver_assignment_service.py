"""Driver assignment for orders that are ready for pickup."""

import logging
from typing import Protocol

from src.api.middleware.error_handler import AuthorizationError, DriverUnavailableError, OrderBusyError, OrderNotReadyError
from src.core.locks import LockTimeoutError
from src.models.order import ActorRole, Order, OrderStatus
from src.repositories.interface import OrderRepository
from src.schemas.auth import UserContext
from src.services.order_service import OrderService

logger = logging.getLogger(__name__)

ASSIGNING_ROLES = frozenset({ActorRole.VENDOR, ActorRole.ADMIN, ActorRole.SYSTEM})


class DriverCapacityPolicy(Protocol):
    """Decides whether a driver can take another delivery."""

    async def can_accept(self, driver_id: str) -> bool:
        ...


class MaxActiveOrdersPolicy:
    """Allows a driver at most ``max_active`` deliveries in progress."""

    def __init__(self, orders: OrderRepository, max_active: int = 1) -> None:
        self.orders = orders
        self.max_active = max_active

    async def can_accept(self, driver_id: str) -> bool:
        active = await self.orders.count_active_for_driver(driver_id)
        return active < self.max_active


class DriverAssignmentService:
    """Assigns drivers to READY orders.

    Setting the driver and moving to ASSIGNED happen in one write. The
    driver's lock is held under the order's lock so the capacity check and
    the write cannot interleave with another assignment of the same driver.
    """

    def __init__(self, order_service: OrderService, policy: DriverCapacityPolicy) -> None:
        self.order_service = order_service
        self.policy = policy

    def _check_can_assign(self, order: Order, actor: UserContext) -> None:
        if actor.role not in ASSIGNING_ROLES:
            raise AuthorizationError(f"Role {actor.role.value} may not assign drivers")
        if actor.role == ActorRole.VENDOR and order["vendor_id"] != actor.user_id:
            raise AuthorizationError("You can only assign drivers to your own orders")

    async def assign(self, order_id: str, driver_id: str, actor: UserContext) -> Order:
        """Assign a driver to a READY order.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If the actor may not assign for this order.
            OrderNotReadyError: If the order is not READY.
            DriverUnavailableError: If the capacity policy refuses the driver.
            OrderBusyError: If the order or driver is locked by another request.
        """
        service = self.order_service
        async with service.order_lock(order_id):
            order = await service.load(order_id)
            self._check_can_assign(order, actor)

            current = OrderStatus(order["status"])
            if current != OrderStatus.READY:
                raise OrderNotReadyError(current.value)

            if service.payments is not None:
                await service.payments.fulfillment_gate(order)

            try:
                async with service.locks.acquire(f"driver:{driver_id}", service.lock_timeout):
                    if not await self.policy.can_accept(driver_id):
                        logger.info("Driver %s refused for order %s: at capacity", driver_id, order_id)
                        raise DriverUnavailableError(f"Driver {driver_id} has no capacity for another delivery")

                    return await service.commit_transition(
                        order,
                        OrderStatus.ASSIGNED,
                        actor,
                        note=f"Driver {driver_id} assigned",
                        changes={"driver_id": driver_id},
                    )
            except LockTimeoutError as e:
                raise OrderBusyError(order_id) from e
