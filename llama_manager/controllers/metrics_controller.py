"""
Metrics Controller Module

This module defines the Prometheus metrics endpoint.
"""

from fastapi import APIRouter, Depends, Response

from ..lifecycle.dependencies import get_metrics_service
from ..services.metrics_service import MetricsService


router = APIRouter(tags=["Metrics"])


@router.get(
    "/metrics",
    summary="Prometheus metrics endpoint"
)
async def get_prometheus_metrics(
    metrics_service: MetricsService = Depends(get_metrics_service)
):
    """
    Prometheus exposition format metrics endpoint.

    Returns request, token, restart and recovery metrics in Prometheus
    text format.
    """
    if not metrics_service:
        return Response(
            content="# Prometheus collector not initialized\n",
            media_type="text/plain",
            status_code=503
        )

    content = metrics_service.get_prometheus_metrics()
    return Response(
        content=content,
        media_type=metrics_service.get_content_type()
    )
