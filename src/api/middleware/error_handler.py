"""Global error handling middleware for consistent error responses."""

import logging
import traceback
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors.

    Use this class to raise application-specific errors that should
    be returned to the client with a specific status code and message.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str = "api_error",
        details: list[dict[str, Any]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code to return.
            error_type: Error category/type for client handling.
            details: Optional additional error details.
            headers: Optional extra response headers.
        """
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.details = details
        self.headers = headers
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, message: str = "Resource not found", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="not_found",
            details=details,
        )


class ValidationError(APIError):
    """Request validation error."""

    def __init__(self, message: str = "Validation error", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="validation_error",
            details=details,
        )


class AuthenticationError(APIError):
    """Authentication failure error."""

    def __init__(self, message: str = "Authentication required", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_type="authentication_error",
            details=details,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(APIError):
    """Authorization failure error."""

    def __init__(self, message: str = "Access denied", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_type="authorization_error",
            details=details,
        )


# Order lifecycle errors


class InvalidOrderError(APIError):
    """Order creation request was rejected (items, vendor or total)."""

    def __init__(self, message: str = "Invalid order", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="invalid_order",
            details=details,
        )


class InvalidTransitionError(APIError):
    """Requested status change is not an edge of the order lifecycle."""

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Cannot transition order from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="invalid_transition",
        )
        self.current = current
        self.target = target


class OrderNotReadyError(APIError):
    """Driver assignment attempted on an order that is not READY."""

    def __init__(self, current: str) -> None:
        super().__init__(
            message=f"Order must be READY for driver assignment (current status: {current})",
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="order_not_ready",
        )
        self.current = current


class DriverUnavailableError(APIError):
    """Driver failed the capacity check."""

    def __init__(self, message: str = "Driver is not available for assignment") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_type="driver_unavailable",
        )


class OrderBusyError(APIError):
    """Per-order lock could not be acquired in time."""

    def __init__(self, order_id: str, retry_after: int = 1) -> None:
        super().__init__(
            message=f"Order {order_id} is being updated by another request, retry shortly",
            status_code=status.HTTP_409_CONFLICT,
            error_type="order_busy",
            headers={"Retry-After": str(retry_after)},
        )


# Payment errors


class AmountMismatchError(APIError):
    """Requested payment amount differs from the order total."""

    def __init__(self, expected_cents: int, actual_cents: int) -> None:
        super().__init__(
            message=f"Payment amount {actual_cents} does not match order total {expected_cents} (cents)",
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="amount_mismatch",
        )
        self.expected_cents = expected_cents
        self.actual_cents = actual_cents


class PaymentStateError(APIError):
    """Payment intent cannot be created for the order in its current state."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_type="payment_state_conflict",
        )


class PaymentRequiredError(APIError):
    """Fulfillment blocked until the order's payment is captured."""

    def __init__(self, message: str = "Payment must be captured before the order can progress") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            error_type="payment_required",
        )


class InvalidSignatureError(APIError):
    """Webhook signature or timestamp failed verification."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_type="invalid_signature",
        )


# Idempotency errors


class IdempotencyConflictError(APIError):
    """A request with the same idempotency key is still executing."""

    def __init__(self, retry_after: int = 1) -> None:
        super().__init__(
            message="A request with this Idempotency-Key is already in progress, retry later",
            status_code=status.HTTP_409_CONFLICT,
            error_type="idempotency_conflict",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class IdempotencyKeyReuseError(APIError):
    """Idempotency key reused with a different request body."""

    def __init__(self) -> None:
        super().__init__(
            message="Idempotency-Key was already used with a different request payload",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_type="idempotency_key_reuse",
        )


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: list[dict[str, Any]] | None = None,
    request_id: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Create a standardized JSON error response.

    Args:
        error_type: Error category for client handling.
        message: Human-readable error description.
        status_code: HTTP status code.
        details: Optional error details.
        request_id: Optional request ID for tracing.
        headers: Optional response headers.

    Returns:
        JSONResponse: Formatted error response.
    """
    error_response = ErrorResponse.from_exception(
        error_type=error_type,
        message=message,
        details=details,
        request_id=request_id,
    )
    content = error_response.model_dump(mode="json", exclude_none=True)
    # The envelope always carries data, even when it is null
    content["data"] = None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Render application errors raised from route handlers."""
    request_id = request.headers.get("X-Request-ID")
    logger.warning(
        "API error: %s - %s",
        exc.error_type,
        exc.message,
        extra={"request_id": request_id, "status_code": exc.status_code},
    )
    return create_error_response(
        error_type=exc.error_type,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render FastAPI HTTP exceptions in the response envelope."""
    request_id = request.headers.get("X-Request-ID")
    logger.warning(
        "HTTP exception: %s - %s",
        exc.status_code,
        exc.detail,
        extra={"request_id": request_id},
    )
    return create_error_response(
        error_type="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=request_id,
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body/path validation failures as 400 responses."""
    request_id = request.headers.get("X-Request-ID")
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg", ""), "type": err.get("type", "value_error")}
        for err in exc.errors()
    ]
    logger.info("Request validation failed: %s", details, extra={"request_id": request_id})
    return create_error_response(
        error_type="validation_error",
        message="Request validation failed",
        status_code=status.HTTP_400_BAD_REQUEST,
        details=details,
        request_id=request_id,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for expected exceptions."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


async def error_handler_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Middleware to catch and format exceptions that escape route handling.

    Logs full stack traces for debugging while returning safe messages to clients.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the successful response or formatted error response.
    """
    # Extract request ID if present (can be set by upstream middleware/load balancer)
    request_id = request.headers.get("X-Request-ID")

    try:
        return await call_next(request)

    except APIError as e:
        return await api_error_handler(request, e)

    except Exception as e:
        # Unexpected exceptions - log full stack trace
        logger.error(
            "Unhandled exception: %s\n%s",
            str(e),
            traceback.format_exc(),
            extra={"request_id": request_id},
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        )
