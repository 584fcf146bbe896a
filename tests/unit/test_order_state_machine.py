"""Unit tests for order lifecycle rules."""

import pytest

from src.api.middleware.error_handler import AuthorizationError, InvalidTransitionError
from src.core.config import DEFAULT_CANCELLATION_POLICY
from src.models.order import ActorRole, OrderStatus
from src.services.order_state_machine import ALLOWED_TRANSITIONS, FORWARD_EDGES, OrderStateMachine


@pytest.fixture
def machine() -> OrderStateMachine:
    policy = {status: frozenset(roles) for status, roles in DEFAULT_CANCELLATION_POLICY.items()}
    return OrderStateMachine(policy)


class TestEdges:
    """Tests for the adjacency table."""

    def test_forward_chain_is_linear(self) -> None:
        chain = [OrderStatus.PLACED]
        while chain[-1] in FORWARD_EDGES:
            chain.append(FORWARD_EDGES[chain[-1]])

        assert chain == [
            OrderStatus.PLACED,
            OrderStatus.ACCEPTED,
            OrderStatus.PREPARING,
            OrderStatus.READY,
            OrderStatus.ASSIGNED,
            OrderStatus.PICKED_UP,
            OrderStatus.ENROUTE,
            OrderStatus.DELIVERED,
        ]

    def test_every_non_terminal_status_can_cancel(self, machine: OrderStateMachine) -> None:
        for status in OrderStatus:
            assert machine.is_edge(status, OrderStatus.CANCELLED) is (not status.is_terminal)

    def test_terminal_statuses_have_no_edges(self) -> None:
        assert OrderStatus.DELIVERED not in ALLOWED_TRANSITIONS
        assert OrderStatus.CANCELLED not in ALLOWED_TRANSITIONS

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OrderStatus.READY, OrderStatus.PLACED),
            (OrderStatus.PLACED, OrderStatus.PREPARING),
            (OrderStatus.ENROUTE, OrderStatus.PICKED_UP),
            (OrderStatus.PLACED, OrderStatus.PLACED),
        ],
    )
    def test_backward_skipping_and_self_edges_rejected(
        self, machine: OrderStateMachine, current: OrderStatus, target: OrderStatus
    ) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.validate_transition(current, target, ActorRole.ADMIN)

        assert exc_info.value.status_code == 400
        assert exc_info.value.current == current.value

    def test_terminal_status_rejects_everything(self, machine: OrderStateMachine) -> None:
        with pytest.raises(InvalidTransitionError, match="already DELIVERED"):
            machine.validate_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED, ActorRole.ADMIN)


class TestRoles:
    """Tests for the role table and cancellation policy."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OrderStatus.PLACED, OrderStatus.ACCEPTED),
            (OrderStatus.ACCEPTED, OrderStatus.PREPARING),
            (OrderStatus.PREPARING, OrderStatus.READY),
        ],
    )
    def test_vendor_drives_kitchen_edges(self, machine: OrderStateMachine, current, target) -> None:
        machine.validate_transition(current, target, ActorRole.VENDOR)

        with pytest.raises(AuthorizationError):
            machine.validate_transition(current, target, ActorRole.DRIVER)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP),
            (OrderStatus.PICKED_UP, OrderStatus.ENROUTE),
            (OrderStatus.ENROUTE, OrderStatus.DELIVERED),
        ],
    )
    def test_driver_drives_delivery_edges(self, machine: OrderStateMachine, current, target) -> None:
        machine.validate_transition(current, target, ActorRole.DRIVER)

        with pytest.raises(AuthorizationError):
            machine.validate_transition(current, target, ActorRole.VENDOR)

    def test_customer_cannot_advance(self, machine: OrderStateMachine) -> None:
        assert machine.is_allowed(OrderStatus.PLACED, OrderStatus.ACCEPTED, ActorRole.CUSTOMER) is False

    def test_admin_takes_any_legal_edge(self, machine: OrderStateMachine) -> None:
        for current, target in FORWARD_EDGES.items():
            assert machine.is_allowed(current, target, ActorRole.ADMIN)

    def test_cancellation_follows_policy(self, machine: OrderStateMachine) -> None:
        assert machine.is_allowed(OrderStatus.PLACED, OrderStatus.CANCELLED, ActorRole.CUSTOMER)
        assert not machine.is_allowed(OrderStatus.ACCEPTED, OrderStatus.CANCELLED, ActorRole.CUSTOMER)
        assert machine.is_allowed(OrderStatus.PREPARING, OrderStatus.CANCELLED, ActorRole.VENDOR)
        assert not machine.is_allowed(OrderStatus.ENROUTE, OrderStatus.CANCELLED, ActorRole.DRIVER)
        assert machine.is_allowed(OrderStatus.ENROUTE, OrderStatus.CANCELLED, ActorRole.ADMIN)

    def test_custom_policy(self) -> None:
        machine = OrderStateMachine({"READY": frozenset({"VENDOR"})})

        assert machine.is_allowed(OrderStatus.READY, OrderStatus.CANCELLED, ActorRole.VENDOR)
        assert not machine.is_allowed(OrderStatus.PLACED, OrderStatus.CANCELLED, ActorRole.CUSTOMER)
