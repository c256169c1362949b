"""
Karaokio API

FastAPI application that turns song requests into karaoke tracks.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from karaokio.api.routes import cache, health, queue, songs
from karaokio.config import settings
from karaokio.core.orchestrator import JobOrchestrator
from karaokio.db import close_db, get_session_factory, init_db
from karaokio.services.cache_index import CacheIndex, EvictionSweeper
from karaokio.services.gateways import build_acquisition_gateway, build_media_gateway
from karaokio.services.gateways.http_client import ServiceClient
from karaokio.services.status_store import StatusStore

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Media service: {settings.media_service_url}")

    settings.ensure_directories()

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    session_factory = get_session_factory()
    store = StatusStore(session_factory)
    cache_index = CacheIndex(session_factory)
    acquisition = build_acquisition_gateway(settings)
    media = build_media_gateway(settings)
    orchestrator = JobOrchestrator(store, cache_index, acquisition, media, settings)
    sweeper = EvictionSweeper(
        cache_index,
        interval_seconds=settings.cache_sweep_interval_seconds,
        max_age_days=settings.cache_max_age_days,
        max_entries=settings.cache_max_entries,
    )

    app.state.store = store
    app.state.cache = cache_index
    app.state.orchestrator = orchestrator

    await orchestrator.start()
    await orchestrator.recover()
    sweeper.start()

    yield

    # Cleanup
    logger.info("Shutting down...")
    await sweeper.stop()
    await orchestrator.shutdown()
    clients = [*acquisition.sources, acquisition.video_source, media]
    for client in clients:
        if isinstance(client, ServiceClient):
            await client.close()
    await close_db()


app = FastAPI(
    title="Karaokio API",
    version=settings.app_version,
    description="Queue songs, watch them turn into karaoke tracks, and run the stage.",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# FastAPI expects (Request, Exception); slowapi's handler takes
# (Request, RateLimitExceeded).
def _handle_rate_limit(request: Request, exc: Exception) -> Response:
    if isinstance(exc, RateLimitExceeded):
        return _rate_limit_exceeded_handler(request, exc)
    raise exc


app.state.limiter = queue.limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(queue.router, prefix="/api", tags=["queue"])
app.include_router(songs.router, prefix="/api", tags=["songs"])
app.include_router(cache.router, prefix="/api", tags=["cache"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
    }
