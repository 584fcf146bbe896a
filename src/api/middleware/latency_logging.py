"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

HEALTH_PATHS = ("/health", "/health/ready")


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log method, path, status and latency for every request.

    Slow requests and error responses are logged at higher levels; health
    checks only at debug level.

    Args:
        request: The incoming request.
        call_next: The next middleware/handler in the chain.

    Returns:
        Response: The response from the handler.
    """
    start_time = time.perf_counter()
    method = request.method
    path = request.url.path
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response is not None else 500
        log_msg = "%s %s - %d - %.2fms"
        log_args = (method, path, status_code, latency_ms)
        log_data = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 2),
            "request_id": request.headers.get("X-Request-ID"),
        }

        if path in HEALTH_PATHS:
            logger.debug(log_msg, *log_args, extra=log_data)
        elif status_code >= 500 or latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
            logger.error(log_msg, *log_args, extra=log_data)
        elif status_code >= 400 or latency_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(log_msg, *log_args, extra=log_data)
        else:
            logger.info(log_msg, *log_args, extra=log_data)
