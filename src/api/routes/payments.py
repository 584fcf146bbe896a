"""Payment intent and provider webhook routes."""

import logging

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from src.api.deps import CurrentUser, CustomerOrAdmin, Idempotency, IdempotencyKey, Payments, Webhooks
from src.api.routes.orders import route_fingerprint
from src.core.config import get_settings
from src.schemas.common import ApiResponse
from src.schemas.payment import PaymentIntentCreate, PaymentIntentResponse, WebhookAck
from src.services.idempotency_service import hash_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/intent",
    response_model=ApiResponse[PaymentIntentResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Creates a PENDING payment intent for the order total. Honors the Idempotency-Key header.",
)
async def create_payment_intent(
    data: PaymentIntentCreate,
    request: Request,
    response: Response,
    user: CustomerOrAdmin,
    payments: Payments,
    guard: Idempotency,
    idempotency_key: IdempotencyKey,
) -> ApiResponse[PaymentIntentResponse]:
    """Create a payment intent for an order.

    Raises:
        AmountMismatchError: 400 if the amount differs from the order total.
        NotFoundError: 404 if the order does not exist.
        PaymentStateError: 409 if the order is finished or already paid.
    """

    async def operation() -> dict:
        intent = await payments.create_intent(
            data.order_id,
            data.resolved_amount_cents,
            data.currency,
            user,
            idempotency_key=idempotency_key,
        )
        return dict(intent)

    result = await guard.execute(
        idempotency_key,
        route_fingerprint(request, user.user_id),
        operation,
        hash_request(data.model_dump(mode="json")),
    )
    if result.replayed:
        response.headers["Idempotent-Replayed"] = "true"

    return ApiResponse(message="Payment intent created", data=PaymentIntentResponse.model_validate(result.data))


@router.get(
    "/{intent_id}",
    response_model=ApiResponse[PaymentIntentResponse],
    summary="Get a payment intent",
)
async def get_payment_intent(intent_id: str, user: CurrentUser, payments: Payments) -> ApiResponse[PaymentIntentResponse]:
    intent = await payments.get_intent(intent_id, user)
    return ApiResponse(data=PaymentIntentResponse.model_validate(intent))


@router.post(
    "/webhook",
    response_model=ApiResponse[WebhookAck],
    responses={
        202: {"description": "Accepted; the event is still being applied or is queued for retry"},
        400: {"description": "Malformed payload"},
        401: {"description": "Invalid signature"},
    },
    summary="Payment provider webhook",
    description="Receives provider events. Authenticated by HMAC signature only.",
)
async def payment_webhook(request: Request, webhooks: Webhooks) -> JSONResponse:
    """Verify and apply a provider event.

    The raw body is read before parsing so the signature covers exactly
    what the provider sent.
    """
    payload = await request.body()
    signature = request.headers.get(get_settings().webhook_signature_header)

    result = await webhooks.ingest(payload, signature)

    body = ApiResponse[WebhookAck](
        message="Webhook received",
        data=WebhookAck(event_id=result.event_id, status=result.status),
    )
    return JSONResponse(status_code=result.http_status, content=body.model_dump(mode="json", by_alias=True))
