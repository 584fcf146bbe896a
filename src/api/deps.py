"""FastAPI dependency injection functions."""

from collections.abc import Callable, Coroutine
from typing import Annotated, Any

from fastapi import Depends, Header, Request

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from src.api.middleware.error_handler import AuthenticationError, AuthorizationError, ValidationError
from src.core.container import ServiceContainer
from src.models.order import ActorRole
from src.schemas.auth import UserContext
from src.services.driver_assignment_service import DriverAssignmentService
from src.services.idempotency_service import IdempotencyGuard
from src.services.order_service import OrderService
from src.services.payment_service import PaymentIntentTracker
from src.services.webhook_service import WebhookIngestor

MAX_IDEMPOTENCY_KEY_LENGTH = 255


async def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Extract and validate the current user from the Authorization header.

    Args:
        authorization: The Authorization header value (Bearer token).

    Returns:
        UserContext: The authenticated user's context.

    Raises:
        AuthenticationError: 401 if token is missing, invalid, or expired.
    """
    if not authorization:
        raise AuthenticationError("Authorization header required")

    # Extract the token from "Bearer <token>" format
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid authorization header format. Expected: Bearer <token>")

    try:
        payload = decode_jwt(parts[1])
        return payload.to_user_context()

    except AuthError as e:
        if e.code == AuthErrorCode.TOKEN_EXPIRED:
            raise AuthenticationError("Token has expired") from e
        raise AuthenticationError(e.message) from e

    except ValueError as e:
        raise AuthenticationError(f"Token role not recognised: {e}") from e


CurrentUser = Annotated[UserContext, Depends(get_current_user)]


def require_roles(*roles: ActorRole) -> Callable[..., Coroutine[Any, Any, UserContext]]:
    """Build a dependency that admits only the given roles.

    Args:
        roles: Roles allowed to call the endpoint.

    Returns:
        A dependency returning the authenticated user.
    """
    allowed = frozenset(roles)

    async def dependency(user: CurrentUser) -> UserContext:
        if user.role not in allowed:
            names = ", ".join(sorted(role.value for role in allowed))
            raise AuthorizationError(f"This action requires one of the roles: {names}")
        return user

    return dependency


CustomerOrAdmin = Annotated[UserContext, Depends(require_roles(ActorRole.CUSTOMER, ActorRole.ADMIN))]
VendorOrAdmin = Annotated[UserContext, Depends(require_roles(ActorRole.VENDOR, ActorRole.ADMIN))]


async def get_idempotency_key(
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> str | None:
    """Read the optional Idempotency-Key header."""
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"Idempotency-Key must be 1-{MAX_IDEMPOTENCY_KEY_LENGTH} characters")
    return key


IdempotencyKey = Annotated[str | None, Depends(get_idempotency_key)]


# Service accessors; the container is built at startup


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_order_service(request: Request) -> OrderService:
    return get_container(request).orders


def get_assignment_service(request: Request) -> DriverAssignmentService:
    return get_container(request).assignments


def get_payment_tracker(request: Request) -> PaymentIntentTracker:
    return get_container(request).payments


def get_webhook_ingestor(request: Request) -> WebhookIngestor:
    return get_container(request).webhooks


def get_idempotency_guard(request: Request) -> IdempotencyGuard:
    return get_container(request).idempotency


Orders = Annotated[OrderService, Depends(get_order_service)]
Assignments = Annotated[DriverAssignmentService, Depends(get_assignment_service)]
Payments = Annotated[PaymentIntentTracker, Depends(get_payment_tracker)]
Webhooks = Annotated[WebhookIngestor, Depends(get_webhook_ingestor)]
Idempotency = Annotated[IdempotencyGuard, Depends(get_idempotency_guard)]
