"""
Queue endpoints.

Singers add songs here; the presentation layer polls the queue and the
current song, and the host advances the queue with start/complete.
"""
import logging
import random

from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from karaokio.api.deps import get_orchestrator, get_store
from karaokio.api.models import (
    AddSongRequest,
    AddSongResponse,
    CompleteResponse,
    CurrentSongResponse,
    QueueResponse,
    SongResponse,
    SubmitResponse,
)
from karaokio.config import AVATAR_COLORS, settings
from karaokio.contracts.song_types import ProcessingOptions
from karaokio.core.orchestrator import JobOrchestrator
from karaokio.errors import InvalidTransition, NotFound
from karaokio.services.status_store import StatusStore

logger = logging.getLogger(__name__)

router = APIRouter()

limiter = Limiter(key_func=get_remote_address, enabled=settings.enable_rate_limit)

UNKNOWN_TITLE = "Unknown Song"
UNKNOWN_ARTIST = "Unknown Artist"


def parse_search_query(query: str) -> tuple[str, str]:
    """Split a free-text request into ``(title, artist)``.

    Accepts ``"Artist - Title"``, ``"Title by Artist"``, and otherwise
    treats the last word as the artist.
    """
    query = query.strip()
    if " - " in query:
        artist, _, title = query.partition(" - ")
        return title.strip() or UNKNOWN_TITLE, artist.strip() or UNKNOWN_ARTIST
    if " by " in query:
        title, _, artist = query.partition(" by ")
        return title.strip() or UNKNOWN_TITLE, artist.strip() or UNKNOWN_ARTIST
    words = query.split()
    if len(words) > 1:
        return " ".join(words[:-1]), words[-1]
    return query or UNKNOWN_TITLE, UNKNOWN_ARTIST


def _not_found(e: NotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: InvalidTransition) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/queue/add", response_model=AddSongResponse, response_model_by_alias=True)
@limiter.limit(settings.rate_limit)
async def add_song(
    request: Request,
    body: AddSongRequest,
    store: StatusStore = Depends(get_store),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> AddSongResponse:
    """Create a singer and a queued song, then start processing it."""
    title, artist = parse_search_query(body.search_query)
    user = await store.add_user(body.user_name.strip(), random.choice(AVATAR_COLORS))
    song = await store.add_song(user.id, title, artist)

    options = ProcessingOptions(
        quality=body.processing_quality,
        output_format=body.output_format,
    )
    outcome = await orchestrator.submit(song.id, options)
    logger.info(f"🎤 {user.name} requested {artist} - {title} ({song.id[:8]})")
    return AddSongResponse(
        success=True,
        song_id=song.id,
        title=title,
        artist=artist,
        outcome=outcome.value,
        message="Song added to queue and processing started",
    )


@router.get("/queue", response_model=QueueResponse, response_model_by_alias=True)
async def list_queue(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> QueueResponse:
    songs = await orchestrator.list_queue()
    return QueueResponse(songs=[SongResponse.from_song(s) for s in songs])


@router.get("/queue/current", response_model=CurrentSongResponse, response_model_by_alias=True)
async def current_song(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> CurrentSongResponse:
    song = await orchestrator.get_current_playing()
    return CurrentSongResponse(song=SongResponse.from_song(song) if song else None)


@router.post("/queue/{song_id}/start", response_model=SongResponse, response_model_by_alias=True)
async def start_song(
    song_id: str,
    store: StatusStore = Depends(get_store),
) -> SongResponse:
    """Put a ready song on stage; whatever was playing is completed."""
    try:
        song = await store.start_song(song_id)
    except NotFound as e:
        raise _not_found(e)
    except InvalidTransition as e:
        raise _conflict(e)
    return SongResponse.from_song(song)


@router.post("/queue/{song_id}/complete", response_model=CompleteResponse, response_model_by_alias=True)
async def complete_song(
    song_id: str,
    store: StatusStore = Depends(get_store),
) -> CompleteResponse:
    """Finish the playing song and promote the next ready one."""
    try:
        next_id = await store.complete_song(song_id)
    except NotFound as e:
        raise _not_found(e)
    except InvalidTransition as e:
        raise _conflict(e)
    return CompleteResponse(completed_song_id=song_id, next_song_id=next_id)


@router.post("/queue/{song_id}/retry", response_model=SubmitResponse, response_model_by_alias=True)
async def retry_song(
    song_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> SubmitResponse:
    """Re-submit a song; a song already processing is left alone."""
    try:
        outcome = await orchestrator.submit(song_id)
    except NotFound as e:
        raise _not_found(e)
    except InvalidTransition as e:
        raise _conflict(e)
    return SubmitResponse(song_id=song_id, outcome=outcome.value)


@router.delete("/queue/{song_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_song(
    song_id: str,
    store: StatusStore = Depends(get_store),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> None:
    """Cancel any processing and drop the song from the queue."""
    try:
        song = await store.get_song(song_id)
        if orchestrator.is_processing(song_id) or song.song_status.is_active:
            await orchestrator.cancel(song_id)
        await store.remove_song(song_id)
    except NotFound as e:
        raise _not_found(e)
    except InvalidTransition as e:
        raise _conflict(e)
    logger.info(f"🗑️ Song {song_id[:8]} removed from queue")


