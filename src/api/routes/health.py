"""Health check endpoints for monitoring and deployment verification."""

import time

from fastapi import APIRouter, Response, status

from src.core.config import get_settings
from src.core.supabase import check_database_connection
from src.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Basic health check to verify the service is running. Used for liveness probes.",
)
async def health_check() -> HealthResponse:
    """Return basic health status.

    This endpoint should always return 200 if the service is running.
    It does not check external dependencies.
    """
    return HealthResponse(status=HealthStatus.HEALTHY)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "All dependencies healthy"},
        503: {"description": "One or more dependencies unhealthy"},
    },
    summary="Readiness check",
    description="Check if all dependencies are available. Used for readiness probes.",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Check readiness of the storage backend.

    The database is only probed when orders are stored in Supabase.
    Returns 503 if any dependency is unhealthy.
    """
    checks: list[CheckResult] = []

    if get_settings().storage_backend == "supabase":
        start_time = time.perf_counter()
        db_result = await check_database_connection()
        latency_ms = (time.perf_counter() - start_time) * 1000
        checks.append(
            CheckResult(
                name="database",
                healthy=db_result["healthy"],
                latency_ms=round(latency_ms, 2),
                error=db_result.get("error"),
            )
        )
    else:
        checks.append(CheckResult(name="storage", healthy=True, latency_ms=0.0))

    all_healthy = all(check.healthy for check in checks)
    if not all_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=HealthStatus.HEALTHY if all_healthy else HealthStatus.UNHEALTHY,
        checks=checks,
    )
