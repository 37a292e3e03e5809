"""
Health check and monitoring endpoints.
"""

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from typing import Dict, Any

from subject_lookup.api.dependencies import get_services
from subject_lookup.api.monitoring.metrics import (
    get_metrics_content_type,
    get_metrics_text,
    update_admission,
    update_idle_pages,
)
from subject_lookup.services.registry import LookupServices

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    components: Dict[str, Dict[str, Any]]


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check with component status",
    description="Check the health status of the gateway and its components"
)
async def health_check(response: Response, services: LookupServices = Depends(get_services)):
    """
    Component health endpoint.

    Status codes:
    - 200: System is healthy or degraded
    - 503: System is unhealthy (browser down)
    """
    health_status = await services.health.check_health()

    if health_status['status'] == 'unhealthy':
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(**health_status)


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    status_code=status.HTTP_200_OK,
    summary="Prometheus metrics",
    description="Get Prometheus metrics for monitoring and observability"
)
async def prometheus_metrics(services: LookupServices = Depends(get_services)):
    """
    Prometheus metrics endpoint.

    Gauges are refreshed from the pool before rendering.
    """
    update_admission(services.pool.gate.active, services.pool.gate.queued)
    update_idle_pages(services.pool.idle_count)

    return PlainTextResponse(
        content=get_metrics_text().decode('utf-8'),
        media_type=get_metrics_content_type()
    )
