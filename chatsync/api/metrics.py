"""
Prometheus-style metrics endpoint.
"""
import time
from typing import Callable

from fastapi import APIRouter, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from chatsync.core import metrics as registry
from chatsync.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Metrics"])


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Use the route template to avoid per-conversation cardinality
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)

        registry.record_request(
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration=duration,
        )

        return response


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Returns metrics in Prometheus exposition format.",
    response_class=Response,
)
async def metrics(request: Request) -> Response:
    """
    Prometheus-style metrics endpoint.
    """
    content = registry.generate_prometheus_metrics(version=request.app.version)
    return Response(
        content=content,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
