"""
Prometheus scrape endpoint
"""

from fastapi import APIRouter, Request, Response

from ..services.prometheus_metrics import prometheus_metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics/prometheus", summary="Prometheus metrics")
async def scrape(request: Request) -> Response:
    # Queue gauges otherwise only move when a job is enqueued or dequeued
    service = getattr(request.app.state, "service", None)
    if service is not None and service.queue.queue is not None:
        service.queue.refresh_metrics()

    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
