"""FastAPI dependencies resolving the services wired up in the app lifespan."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from karaokio.core.orchestrator import JobOrchestrator
from karaokio.services.cache_index import CacheIndex
from karaokio.services.status_store import StatusStore


def _state(request: Request, name: str) -> object:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return value


def get_orchestrator(request: Request) -> JobOrchestrator:
    return _state(request, "orchestrator")  # type: ignore[return-value]


def get_store(request: Request) -> StatusStore:
    return _state(request, "store")  # type: ignore[return-value]


def get_cache(request: Request) -> CacheIndex:
    return _state(request, "cache")  # type: ignore[return-value]
