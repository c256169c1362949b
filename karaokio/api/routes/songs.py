"""Song status endpoint polled by the presentation layer."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from karaokio.api.deps import get_orchestrator
from karaokio.api.models import SongResponse
from karaokio.core.orchestrator import JobOrchestrator
from karaokio.errors import NotFound

router = APIRouter()


@router.get("/songs/{song_id}", response_model=SongResponse, response_model_by_alias=True)
async def get_song(
    song_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> SongResponse:
    """Current status, progress and artifacts of one song.

    ``progress`` drops back to 0 when a run fails; ``error`` then carries
    the reason.
    """
    try:
        song = await orchestrator.get_status(song_id)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return SongResponse.from_song(song)
