"""
Health check router.

/health is a plain liveness probe and never touches the database.
/health/ready reports database health through the resilience layer, so it
reflects the circuit breaker and is cached for a short TTL.
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.deps import get_data_access, get_settings
from backend.services.resilience import ResilientDataAccess
from backend.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Health"],
)


@router.get("/health")
def health(settings: Settings = Depends(get_settings)):
    """
    Simple liveness endpoint.

    Returns:
        dict: Status indicator for health checks
    """
    return {"status": "ok", "service": settings.service_name}


@router.get("/health/ready")
async def health_ready(
    force: bool = Query(False, description="Bypass the cached probe result"),
    settings: Settings = Depends(get_settings),
    data_access: ResilientDataAccess = Depends(get_data_access),
):
    """
    Readiness probe that checks the database.

    Returns 503 when the database is unhealthy or the circuit is open.
    """
    status = await data_access.check_health(force=force)
    checks = {"database": status.to_dict()}

    if not status.is_healthy:
        logger.warning("Readiness check failed: %s", status.error)
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "service": settings.service_name,
                "checks": checks,
            },
        )

    return {"status": "ready", "service": settings.service_name, "checks": checks}
