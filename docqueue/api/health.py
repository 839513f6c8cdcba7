"""
Health check endpoints - no authentication required
"""

from fastapi import APIRouter, Request

from ..config import API_VERSION

router = APIRouter()

@router.get("/api/health")
async def health(request: Request):
    service = request.app.state.service
    return {
        "status": "ok",
        "version": API_VERSION,
        "queue": service.queue.get_queue_stats(),
    }

# Unauthenticated probe for kube/docker HEALTHCHECKs:
@router.get("/healthz", include_in_schema=False)
async def healthz():
    return {"status": "ok"}
