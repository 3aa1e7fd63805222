from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

from relaymq.core import SERVICE_NAME
from relaymq.infrastructure.messaging.rabbitmq.constants import ConnectionHealthStatus

health_router = APIRouter(tags=["Health"])

_READY_STATUSES = frozenset({ConnectionHealthStatus.HEALTHY, ConnectionHealthStatus.DEGRADED})


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@health_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Returns 200 if the process is running.",
    responses={200: {"description": "Service is alive."}},
)
async def live() -> dict:
    return {"status": "ok"}


@health_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Returns 200 while the RabbitMQ connection is healthy or degraded (blocked), 503 otherwise.",
    responses={
        200: {"description": "Connection is healthy or degraded."},
        503: {"description": "Connection is unhealthy, disconnected, or not installed."},
    },
)
async def ready(request: Request) -> JSONResponse:
    provider = getattr(request.app.state, "connection_provider", None)
    if provider is None:
        _log("connection_provider_not_initialized")
        return JSONResponse(status_code=503, content={"status": ConnectionHealthStatus.DISCONNECTED.value})
    health = await provider.get_health()
    if health.status not in _READY_STATUSES:
        _log("connection_not_ready", status=health.status.value, details=health.details)
        return JSONResponse(status_code=503, content=health.to_dict())
    return JSONResponse(status_code=200, content=health.to_dict())
