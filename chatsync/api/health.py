"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response

from chatsync.api.deps import get_services
from chatsync.core.logging import get_logger
from chatsync.schemas.message import HealthResponse
from chatsync.services.container import ChatServices

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    """
    Liveness probe - always returns 200.
    """
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the service is ready to handle traffic."
)
async def readiness(
    response: Response,
    services: Annotated[ChatServices, Depends(get_services)],
) -> HealthResponse:
    """
    Readiness probe - checks if the service can handle traffic.

    Checks:
    - Message store database is reachable
    - Local cache database is reachable
    - AUTH_SECRET environment variable is configured

    Push delivery is reported but never blocks readiness.
    """
    settings = services.settings
    checks = {}
    is_ready = True

    store_ok = services.store_db.check_connection()
    checks["message_store"] = "ok" if store_ok else "failed"
    if not store_ok:
        is_ready = False
        logger.warning("Readiness check failed: message store not reachable")

    cache_ok = services.cache_db.check_connection()
    checks["local_cache"] = "ok" if cache_ok else "failed"
    if not cache_ok:
        is_ready = False
        logger.warning("Readiness check failed: local cache not reachable")

    secret_ok = settings.is_auth_secret_configured
    checks["auth_secret"] = "ok" if secret_ok else "not configured"
    if not secret_ok:
        is_ready = False
        logger.warning("Readiness check failed: AUTH_SECRET not configured")

    checks["push"] = "ok" if services.notifier.send_url else "disabled"

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    else:
        response.status_code = 503
        return HealthResponse(status="not ready", checks=checks)
