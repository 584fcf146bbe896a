"""Unit tests for driver assignment."""

import asyncio

import pytest

from src.api.middleware.error_handler import AuthorizationError, DriverUnavailableError, OrderNotReadyError
from src.models.order import ActorRole, OrderStatus
from src.schemas.auth import SYSTEM_ACTOR, UserContext
from src.schemas.order import OrderCreate, OrderItemRequest
from src.services.driver_assignment_service import MaxActiveOrdersPolicy


async def ready_order(container, customer, vendor) -> dict:
    order = await container.orders.create_order(
        customer, OrderCreate(items=[OrderItemRequest(menu_item_id="burger", quantity=1)])
    )
    for status in (OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.READY):
        order = await container.orders.transition(order["id"], status, vendor)
    return order


class TestAssign:
    """Tests for DriverAssignmentService.assign."""

    @pytest.mark.asyncio
    async def test_assigns_driver_and_status_together(self, container, customer, vendor, mock_notifier) -> None:
        order = await ready_order(container, customer, vendor)

        assigned = await container.assignments.assign(order["id"], "driver-1", vendor)
        await container.notifications.drain()

        assert assigned["status"] == "ASSIGNED"
        assert assigned["driver_id"] == "driver-1"
        assert assigned["version"] == order["version"] + 1
        assert assigned["status_history"][-1]["status"] == "ASSIGNED"
        statuses = [call.args[0]["status"] for call in mock_notifier.notify_status_change.await_args_list]
        assert statuses[-1] == "ASSIGNED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("steps", [0, 1, 2])
    async def test_rejected_before_ready(self, container, customer, vendor, steps) -> None:
        order = await container.orders.create_order(
            customer, OrderCreate(items=[OrderItemRequest(menu_item_id="fries", quantity=1)])
        )
        for status in (OrderStatus.ACCEPTED, OrderStatus.PREPARING)[:steps]:
            await container.orders.transition(order["id"], status, vendor)

        with pytest.raises(OrderNotReadyError) as exc_info:
            await container.assignments.assign(order["id"], "driver-1", vendor)

        assert exc_info.value.status_code == 400
        stored = await container.orders.get_order(order["id"], vendor)
        assert stored["driver_id"] is None

    @pytest.mark.asyncio
    async def test_rejected_after_assignment(self, container, customer, vendor) -> None:
        order = await ready_order(container, customer, vendor)
        await container.assignments.assign(order["id"], "driver-1", vendor)

        with pytest.raises(OrderNotReadyError):
            await container.assignments.assign(order["id"], "driver-2", vendor)

        stored = await container.orders.get_order(order["id"], vendor)
        assert stored["driver_id"] == "driver-1"

    @pytest.mark.asyncio
    async def test_driver_and_customer_cannot_assign(self, container, customer, vendor, driver) -> None:
        order = await ready_order(container, customer, vendor)

        for actor in (driver, customer):
            with pytest.raises(AuthorizationError):
                await container.assignments.assign(order["id"], "driver-1", actor)

    @pytest.mark.asyncio
    async def test_other_vendor_cannot_assign(self, container, customer, vendor) -> None:
        order = await ready_order(container, customer, vendor)

        with pytest.raises(AuthorizationError):
            await container.assignments.assign(
                order["id"], "driver-1", UserContext(user_id="vendor-2", role=ActorRole.VENDOR)
            )

    @pytest.mark.asyncio
    async def test_system_and_admin_can_assign(self, container, customer, vendor, admin) -> None:
        first = await ready_order(container, customer, vendor)
        second = await ready_order(container, customer, vendor)

        assert (await container.assignments.assign(first["id"], "driver-1", SYSTEM_ACTOR))["status"] == "ASSIGNED"
        assert (await container.assignments.assign(second["id"], "driver-2", admin))["status"] == "ASSIGNED"

    @pytest.mark.asyncio
    async def test_busy_driver_is_unavailable(self, container, customer, vendor) -> None:
        first = await ready_order(container, customer, vendor)
        second = await ready_order(container, customer, vendor)
        await container.assignments.assign(first["id"], "driver-1", vendor)

        with pytest.raises(DriverUnavailableError) as exc_info:
            await container.assignments.assign(second["id"], "driver-1", vendor)

        assert exc_info.value.status_code == 409
        stored = await container.orders.get_order(second["id"], vendor)
        assert stored["status"] == "READY"
        assert stored["driver_id"] is None

    @pytest.mark.asyncio
    async def test_driver_free_again_after_delivery(self, container, customer, vendor, driver) -> None:
        first = await ready_order(container, customer, vendor)
        second = await ready_order(container, customer, vendor)
        await container.assignments.assign(first["id"], "driver-1", vendor)
        for status in (OrderStatus.PICKED_UP, OrderStatus.ENROUTE, OrderStatus.DELIVERED):
            await container.orders.transition(first["id"], status, driver)

        assigned = await container.assignments.assign(second["id"], "driver-1", vendor)

        assert assigned["driver_id"] == "driver-1"

    @pytest.mark.asyncio
    async def test_concurrent_assignment_of_one_driver(self, container, customer, vendor) -> None:
        orders = [await ready_order(container, customer, vendor) for _ in range(3)]

        results = await asyncio.gather(
            *(container.assignments.assign(o["id"], "driver-1", vendor) for o in orders),
            return_exceptions=True,
        )

        assert sum(isinstance(r, dict) for r in results) == 1
        assert sum(isinstance(r, DriverUnavailableError) for r in results) == 2


class TestMaxActiveOrdersPolicy:
    """Tests for the default capacity policy."""

    @pytest.mark.asyncio
    async def test_counts_only_active_deliveries(self, container, customer, vendor) -> None:
        policy = MaxActiveOrdersPolicy(container.repositories.orders, max_active=2)
        order = await ready_order(container, customer, vendor)
        await container.assignments.assign(order["id"], "driver-9", SYSTEM_ACTOR)

        assert await policy.can_accept("driver-9") is True
        assert await policy.can_accept("driver-unknown") is True

        strict = MaxActiveOrdersPolicy(container.repositories.orders, max_active=1)
        assert await strict.can_accept("driver-9") is False
