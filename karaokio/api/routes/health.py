"""Health check endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Request

from karaokio.config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict[str, object]:
    """Basic health check plus worker-pool occupancy when the pool is up."""
    body: dict[str, object] = {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        body["jobs"] = orchestrator.status_snapshot()
    return body
