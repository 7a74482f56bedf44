"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

from jobcoord import __version__
from jobcoord.api.dependencies import Runtime
from jobcoord.clock import utcnow
from jobcoord.db import ping
from jobcoord.observability.metrics import get_metrics
from jobcoord.types.api import HealthResponse

router = APIRouter(tags=["Health"])


async def _database_status(runtime: Runtime) -> str:
    if runtime.settings.store_backend != "postgres":
        return "not_used"
    return "healthy" if await ping() else "unhealthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(runtime: Runtime) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and reports leadership.
    """
    db_status = await _database_status(runtime)

    return HealthResponse(
        status="degraded" if db_status == "unhealthy" else "healthy",
        version=__version__,
        database=db_status,
        is_leader=runtime.elector.is_leader,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(runtime: Runtime) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Followers are ready too: they answer triggers with NOT_LEADER routing.
    """
    return {"ready": await _database_status(runtime) != "unhealthy"}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
