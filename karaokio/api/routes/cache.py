"""Cache inspection and manual eviction."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from karaokio.api.deps import get_cache
from karaokio.api.models import (
    CacheEntriesResponse,
    CacheEntryOut,
    CacheStatsResponse,
    EvictRequest,
    EvictResponse,
)
from karaokio.config import settings
from karaokio.services.cache_index import CacheIndex

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/cache/stats", response_model=CacheStatsResponse, response_model_by_alias=True)
async def cache_stats(cache: CacheIndex = Depends(get_cache)) -> CacheStatsResponse:
    stats = await cache.stats()
    return CacheStatsResponse(
        count=stats.count,
        total_size=stats.total_size,
        oldest=stats.oldest,
        newest=stats.newest,
    )


@router.get("/cache/entries", response_model=CacheEntriesResponse, response_model_by_alias=True)
async def cache_entries(cache: CacheIndex = Depends(get_cache)) -> CacheEntriesResponse:
    entries = await cache.list_entries()
    return CacheEntriesResponse(entries=[CacheEntryOut.from_entry(e) for e in entries])


@router.post("/cache/evict", response_model=EvictResponse, response_model_by_alias=True)
async def cache_evict(
    body: Optional[EvictRequest] = None,
    cache: CacheIndex = Depends(get_cache),
) -> EvictResponse:
    """Run an eviction sweep now; unset limits fall back to configuration."""
    body = body or EvictRequest()
    max_age_days = body.max_age_days if body.max_age_days is not None else settings.cache_max_age_days
    max_entries = body.max_entries if body.max_entries is not None else settings.cache_max_entries
    report = await cache.evict(max_age_days, max_entries)
    return EvictResponse(
        removed=report.removed,
        skipped=report.skipped,
        files_deleted=report.files_deleted,
    )
