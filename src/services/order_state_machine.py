"""Order lifecycle rules: which edges exist and who may drive them.

    PLACED -> ACCEPTED -> PREPARING -> READY -> ASSIGNED -> PICKED_UP -> ENROUTE -> DELIVERED
    any non-terminal status -> CANCELLED

READY -> ASSIGNED is only taken through driver assignment, which also sets
the order's driver.
"""

import logging
from collections.abc import Mapping

from src.api.middleware.error_handler import AuthorizationError, InvalidTransitionError
from src.models.order import ActorRole, OrderStatus

logger = logging.getLogger(__name__)

FORWARD_EDGES: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PLACED: OrderStatus.ACCEPTED,
    OrderStatus.ACCEPTED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.ASSIGNED,
    OrderStatus.ASSIGNED: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.ENROUTE,
    OrderStatus.ENROUTE: OrderStatus.DELIVERED,
}

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    current: frozenset({target, OrderStatus.CANCELLED})
    for current, target in FORWARD_EDGES.items()
}

# Roles driving each forward edge, keyed by the edge's target status
FORWARD_EDGE_ROLES: dict[OrderStatus, frozenset[ActorRole]] = {
    OrderStatus.ACCEPTED: frozenset({ActorRole.VENDOR}),
    OrderStatus.PREPARING: frozenset({ActorRole.VENDOR}),
    OrderStatus.READY: frozenset({ActorRole.VENDOR}),
    OrderStatus.ASSIGNED: frozenset({ActorRole.VENDOR, ActorRole.SYSTEM}),
    OrderStatus.PICKED_UP: frozenset({ActorRole.DRIVER}),
    OrderStatus.ENROUTE: frozenset({ActorRole.DRIVER}),
    OrderStatus.DELIVERED: frozenset({ActorRole.DRIVER}),
}

# Transitions that notify the customer and other parties
NOTIFY_ON: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.READY,
        OrderStatus.ASSIGNED,
        OrderStatus.PICKED_UP,
        OrderStatus.ENROUTE,
        OrderStatus.DELIVERED,
    }
)


class OrderStateMachine:
    """Validates order status transitions against the edge and role tables."""

    def __init__(self, cancellation_policy: Mapping[str, frozenset[str]]) -> None:
        """Initialize with the cancellation policy table.

        Args:
            cancellation_policy: Status name -> role names allowed to cancel from it.
        """
        self.cancellation_policy = cancellation_policy

    def is_edge(self, current: OrderStatus, target: OrderStatus) -> bool:
        """Check whether ``current -> target`` is an edge of the lifecycle."""
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def validate_transition(self, current: OrderStatus, target: OrderStatus, role: ActorRole) -> None:
        """Validate a requested transition for an actor role.

        ADMIN may take any edge. Other roles are checked against the forward
        edge table, or the cancellation policy for CANCELLED.

        Raises:
            InvalidTransitionError: If the edge does not exist.
            AuthorizationError: If the role may not take this edge.
        """
        if current.is_terminal:
            raise InvalidTransitionError(current.value, target.value, f"order is already {current.value}")

        if not self.is_edge(current, target):
            allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS[current]))
            raise InvalidTransitionError(current.value, target.value, f"allowed: {allowed}")

        if role == ActorRole.ADMIN:
            return

        if target == OrderStatus.CANCELLED:
            permitted = self.cancellation_policy.get(current.value, frozenset())
            if role.value not in permitted:
                raise AuthorizationError(f"Role {role.value} may not cancel an order that is {current.value}")
            return

        if role not in FORWARD_EDGE_ROLES[target]:
            raise AuthorizationError(
                f"Role {role.value} may not move an order from {current.value} to {target.value}"
            )

        logger.debug("Transition %s->%s permitted for role=%s", current.value, target.value, role.value)

    def is_allowed(self, current: OrderStatus, target: OrderStatus, role: ActorRole) -> bool:
        """Non-raising form of validate_transition."""
        try:
            self.validate_transition(current, target, role)
        except (InvalidTransitionError, AuthorizationError):
            return False
        return True
