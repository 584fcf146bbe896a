"""Order lifecycle API routes."""

from fastapi import APIRouter, Request, Response, status

from src.api.deps import Assignments, CurrentUser, CustomerOrAdmin, Idempotency, IdempotencyKey, Orders, VendorOrAdmin
from src.schemas.common import ApiResponse
from src.schemas.order import CancelRequest, OrderCreate, OrderResponse, StatusHistoryResponse, StatusUpdate
from src.services.idempotency_service import endpoint_fingerprint, hash_request

router = APIRouter(prefix="/orders", tags=["orders"])


def route_fingerprint(request: Request, user_id: str) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    return endpoint_fingerprint(request.method, path, user_id)


@router.post(
    "",
    response_model=ApiResponse[OrderResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Creates an order at PLACED. Honors the Idempotency-Key header.",
)
async def create_order(
    data: OrderCreate,
    request: Request,
    response: Response,
    user: CustomerOrAdmin,
    orders: Orders,
    guard: Idempotency,
    idempotency_key: IdempotencyKey,
) -> ApiResponse[OrderResponse]:
    """Place an order for the authenticated customer.

    Replays of a completed request with the same key return the original
    order and set ``Idempotent-Replayed: true``.
    """

    async def operation() -> dict:
        return dict(await orders.create_order(user, data))

    result = await guard.execute(
        idempotency_key,
        route_fingerprint(request, user.user_id),
        operation,
        hash_request(data.model_dump(mode="json")),
    )
    if result.replayed:
        response.headers["Idempotent-Replayed"] = "true"

    return ApiResponse(message="Order placed", data=OrderResponse.model_validate(result.data))


@router.get(
    "/{order_id}",
    response_model=ApiResponse[OrderResponse],
    summary="Get an order",
)
async def get_order(order_id: str, user: CurrentUser, orders: Orders) -> ApiResponse[OrderResponse]:
    """Return an order the caller is a party to."""
    order = await orders.get_order(order_id, user)
    return ApiResponse(data=OrderResponse.model_validate(order))


@router.post(
    "/{order_id}/accept",
    response_model=ApiResponse[OrderResponse],
    summary="Accept an order",
    description="Vendor moves a PLACED order to ACCEPTED.",
)
async def accept_order(order_id: str, user: VendorOrAdmin, orders: Orders) -> ApiResponse[OrderResponse]:
    order = await orders.accept(order_id, user)
    return ApiResponse(message="Order accepted", data=OrderResponse.model_validate(order))


@router.patch(
    "/{order_id}/status",
    response_model=ApiResponse[OrderResponse],
    summary="Advance order status",
    description="Moves an order along one lifecycle edge permitted for the caller's role.",
)
async def update_order_status(
    order_id: str,
    data: StatusUpdate,
    user: CurrentUser,
    orders: Orders,
) -> ApiResponse[OrderResponse]:
    """Request a status transition.

    Raises:
        InvalidTransitionError: 400 for an edge outside the lifecycle.
        PaymentRequiredError: 402 when payment blocks fulfillment.
        AuthorizationError: 403 when the role may not take the edge.
    """
    order = await orders.transition(order_id, data.status, user, note=data.note)
    return ApiResponse(message=f"Order is now {order['status']}", data=OrderResponse.model_validate(order))


@router.post(
    "/{order_id}/cancel",
    response_model=ApiResponse[OrderResponse],
    summary="Cancel an order",
    description="Cancels an order when the caller's role may cancel from its current status.",
)
async def cancel_order(
    order_id: str,
    user: CurrentUser,
    orders: Orders,
    data: CancelRequest | None = None,
) -> ApiResponse[OrderResponse]:
    order = await orders.cancel(order_id, user, reason=data.reason if data else None)
    return ApiResponse(message="Order cancelled", data=OrderResponse.model_validate(order))


@router.post(
    "/{order_id}/assign/{driver_id}",
    response_model=ApiResponse[OrderResponse],
    summary="Assign a driver",
    description="Assigns a driver to a READY order and moves it to ASSIGNED.",
)
async def assign_driver(
    order_id: str,
    driver_id: str,
    user: VendorOrAdmin,
    assignments: Assignments,
) -> ApiResponse[OrderResponse]:
    order = await assignments.assign(order_id, driver_id, user)
    return ApiResponse(message="Driver assigned", data=OrderResponse.model_validate(order))


@router.get(
    "/{order_id}/status-history",
    response_model=ApiResponse[list[StatusHistoryResponse]],
    summary="Order audit trail",
)
async def get_status_history(
    order_id: str,
    user: CurrentUser,
    orders: Orders,
) -> ApiResponse[list[StatusHistoryResponse]]:
    """Return the order's status history, oldest first."""
    history = await orders.get_status_history(order_id, user)
    return ApiResponse(data=[StatusHistoryResponse.model_validate(entry) for entry in history])
