"""
Status Store: durable record of every song request.

Holds identity, lifecycle status, progress and artifact paths for each song
and answers the two queue queries the presentation layer polls:
``current_playing()`` and ``active_queue()``.

Every per-song mutation is a read-modify-write executed under a per-song
lock inside one session, so readers never see a half-applied update.
Orchestrator writes carry the run's generation token; a write whose token
(or expected stage status) no longer matches the row is discarded and the
method returns ``False``.

Queue-advance (``start_song`` / ``complete_song``) additionally takes a
store-wide lock so at most one song is ever ``playing``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from karaokio.contracts.song_types import (
    RESTARTABLE_STATUSES,
    ArtifactSet,
    SongStatus,
    check_transition,
)
from karaokio.core.keyed_lock import KeyedLock
from karaokio.db.models import Song, User, utc_now
from karaokio.errors import InvalidTransition, SongNotFound, UserNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StatusStore:
    """CRUD and atomic lifecycle updates for Song and User records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._song_locks = KeyedLock()
        self._queue_lock = asyncio.Lock()

    # ── users ──────────────────────────────────────────────────────────

    async def add_user(self, name: str, color: str, user_id: str | None = None) -> User:
        async with self._session_factory() as session:
            user = User(name=name, color=color)
            if user_id:
                user.id = user_id
            user = await session.merge(user)
            await session.commit()
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    # ── songs: create / read ───────────────────────────────────────────

    async def add_song(
        self,
        user_id: str,
        title: str,
        artist: str,
        *,
        song_id: str | None = None,
        requested_at: datetime | None = None,
    ) -> Song:
        """Create a song record in ``queued`` state."""
        async with self._session_factory() as session:
            if await session.get(User, user_id) is None:
                raise UserNotFound(user_id)
            song = Song(
                user_id=user_id,
                title=title,
                artist=artist,
                status=SongStatus.QUEUED.value,
                progress=0,
                requested_at=requested_at or utc_now(),
            )
            if song_id:
                song.id = song_id
            session.add(song)
            await session.commit()
            song_id = song.id
        logger.info(f"📥 Song {song_id[:8]} added: {artist} - {title}")
        return await self.get_song(song_id)

    async def get_song(self, song_id: str) -> Song:
        """Return the song with its user loaded.  Raises ``SongNotFound``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Song).options(selectinload(Song.user)).where(Song.id == song_id)
            )
            song = result.scalar_one_or_none()
        if song is None:
            raise SongNotFound(song_id)
        return song

    async def remove_song(self, song_id: str) -> None:
        async with self._song_locks.hold(song_id):
            async with self._session_factory() as session:
                song = await session.get(Song, song_id)
                if song is None:
                    raise SongNotFound(song_id)
                await session.delete(song)
                await session.commit()

    async def active_queue(self) -> list[Song]:
        """All songs not yet ``completed``, oldest request first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Song)
                .options(selectinload(Song.user))
                .where(Song.status != SongStatus.COMPLETED.value)
                .order_by(Song.requested_at.asc(), Song.id.asc())
            )
            return list(result.scalars().all())

    async def current_playing(self) -> Optional[Song]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Song)
                .options(selectinload(Song.user))
                .where(Song.status == SongStatus.PLAYING.value)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def songs_with_status(self, statuses: Iterable[SongStatus]) -> list[Song]:
        values = [s.value for s in statuses]
        async with self._session_factory() as session:
            result = await session.execute(
                select(Song)
                .where(Song.status.in_(values))
                .order_by(Song.requested_at.asc(), Song.id.asc())
            )
            return list(result.scalars().all())

    # ── songs: job-run lifecycle ───────────────────────────────────────

    async def _mutate(self, song_id: str, apply: Callable[[Song], T]) -> T:
        """Run ``apply`` against the locked row and commit its changes."""
        async with self._song_locks.hold(song_id):
            async with self._session_factory() as session:
                song = await session.get(Song, song_id)
                if song is None:
                    raise SongNotFound(song_id)
                outcome = apply(song)
                await session.commit()
                return outcome

    async def begin_run(self, song_id: str, quality: str) -> int:
        """Reset the song for a fresh run and return the new generation token.

        Allowed from ``queued`` (first run) and from ``ready``/``completed``/
        ``failed`` (resubmission).  Progress, error and artifacts of the
        previous run are cleared.
        """
        def _apply(song: Song) -> int:
            current = song.song_status
            if current not in RESTARTABLE_STATUSES:
                raise InvalidTransition(current.value, SongStatus.QUEUED.value)
            if current is not SongStatus.QUEUED:
                check_transition(current, SongStatus.QUEUED)
            song.status = SongStatus.QUEUED.value
            song.progress = 0
            song.error = None
            song.fingerprint = None
            song.quality = quality
            song.started_at = None
            song.completed_at = None
            song.clear_artifacts()
            song.run_generation += 1
            return song.run_generation

        return await self._mutate(song_id, _apply)

    async def advance(
        self,
        song_id: str,
        generation: int,
        status: SongStatus,
        progress: int,
    ) -> bool:
        """Move a running job into ``status`` with at least ``progress``."""
        def _apply(song: Song) -> bool:
            if not _owns_run(song, generation):
                return False
            current = song.song_status
            if current is not status:
                check_transition(current, status)
                song.status = status.value
                if current is SongStatus.QUEUED:
                    song.started_at = utc_now()
            song.progress = max(song.progress, min(progress, 100))
            return True

        return await self._mutate(song_id, _apply)

    async def record_progress(
        self,
        song_id: str,
        generation: int,
        status: SongStatus,
        progress: int,
    ) -> bool:
        """Raise progress within the current stage.

        Discarded when the run was superseded or has already left ``status``;
        never lowers progress.
        """
        def _apply(song: Song) -> bool:
            if song.run_generation != generation or song.song_status is not status:
                return False
            song.progress = max(song.progress, min(progress, 100))
            return True

        return await self._mutate(song_id, _apply)

    async def set_artifacts(self, song_id: str, generation: int, artifacts: ArtifactSet) -> bool:
        def _apply(song: Song) -> bool:
            if not _owns_run(song, generation):
                return False
            song.apply_artifacts(artifacts)
            return True

        return await self._mutate(song_id, _apply)

    async def finish_run(
        self,
        song_id: str,
        generation: int,
        artifacts: ArtifactSet,
        fingerprint: str | None,
    ) -> bool:
        """Mark the run ``ready`` with progress 100 and its artifact paths."""
        def _apply(song: Song) -> bool:
            if not _owns_run(song, generation):
                return False
            check_transition(song.song_status, SongStatus.READY)
            song.apply_artifacts(artifacts)
            song.fingerprint = fingerprint
            song.status = SongStatus.READY.value
            song.progress = 100
            song.error = None
            return True

        return await self._mutate(song_id, _apply)

    async def fail_run(self, song_id: str, generation: int | None, error: str) -> bool:
        """Mark a non-terminal run ``failed``: progress 0, error recorded.

        ``generation=None`` skips the token check (used for songs that have
        no live job, such as recovery after a restart).
        """
        def _apply(song: Song) -> bool:
            if generation is not None and not _owns_run(song, generation):
                return False
            check_transition(song.song_status, SongStatus.FAILED)
            song.status = SongStatus.FAILED.value
            song.progress = 0
            song.error = error
            return True

        return await self._mutate(song_id, _apply)

    # ── queue advance ──────────────────────────────────────────────────

    async def start_song(self, song_id: str) -> Song:
        """Put a ``ready`` song on stage, completing whatever is playing now."""
        async with self._queue_lock:
            async with self._song_locks.hold(song_id):
                async with self._session_factory() as session:
                    song = await session.get(Song, song_id)
                    if song is None:
                        raise SongNotFound(song_id)
                    if song.song_status is SongStatus.PLAYING:
                        return await self.get_song(song_id)
                    check_transition(song.song_status, SongStatus.PLAYING)

                    result = await session.execute(
                        select(Song).where(Song.status == SongStatus.PLAYING.value)
                    )
                    for playing in result.scalars().all():
                        playing.status = SongStatus.COMPLETED.value
                        playing.completed_at = utc_now()
                        logger.info(f"🏁 Song {playing.id[:8]} completed (replaced on stage)")

                    song.status = SongStatus.PLAYING.value
                    await session.commit()
        logger.info(f"🎤 Song {song_id[:8]} now playing")
        return await self.get_song(song_id)

    async def complete_song(self, song_id: str) -> Optional[str]:
        """Complete the playing song and promote the earliest ``ready`` one.

        Returns the promoted song id, or ``None`` when nothing is ready.
        """
        async with self._queue_lock:
            async with self._song_locks.hold(song_id):
                async with self._session_factory() as session:
                    song = await session.get(Song, song_id)
                    if song is None:
                        raise SongNotFound(song_id)
                    check_transition(song.song_status, SongStatus.COMPLETED)
                    song.status = SongStatus.COMPLETED.value
                    song.completed_at = utc_now()

                    result = await session.execute(
                        select(Song)
                        .where(Song.status == SongStatus.READY.value)
                        .order_by(Song.requested_at.asc(), Song.id.asc())
                        .limit(1)
                    )
                    next_song = result.scalar_one_or_none()
                    next_id = next_song.id if next_song is not None else None
                    await session.commit()

            if next_id is not None:
                # The candidate may have been resubmitted between the query and
                # here; re-check under its own lock before promoting.
                promoted = await self._mutate(next_id, _promote_if_ready)
                if not promoted:
                    next_id = None

        logger.info(
            f"🏁 Song {song_id[:8]} completed; "
            + (f"next up {next_id[:8]}" if next_id else "no more songs ready")
        )
        return next_id


def _owns_run(song: Song, generation: int) -> bool:
    """True while ``generation`` is the song's live, unfinished run."""
    return song.run_generation == generation and song.song_status.is_active


def _promote_if_ready(song: Song) -> bool:
    if song.song_status is not SongStatus.READY:
        return False
    song.status = SongStatus.PLAYING.value
    return True
