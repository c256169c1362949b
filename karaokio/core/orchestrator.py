"""
Job Orchestrator: drives each song from ``queued`` to ``ready``.

For every submitted song the orchestrator consults the Cache Index; on a
miss it runs the stage pipeline (acquire, separate, sync lyrics, compose)
against the collaborator gateways, writing state and progress to the
Status Store and populating the cache on success.

Concurrency model:

- a ``song_id -> JobHandle`` registry guarded by a lock, so at most one
  run per song is active;
- a FIFO admission queue ordered by ``requested_at``;
- ``max_concurrent_jobs`` worker tasks draining that queue, each awaiting
  a separate run task so cancelling a run never kills the worker.

Each run owns a generation token (``Song.run_generation``).  Every store
write carries it; the store drops writes from a superseded or cancelled
run.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, get_args

from karaokio.config import Settings, get_settings
from karaokio.contracts.song_types import (
    ArtifactSet,
    LyricLine,
    ProcessingOptions,
    Quality,
    SeparationResult,
    SongStatus,
    Stage,
)
from karaokio.core.pipeline import (
    ProgressReporter,
    run_with_deadline,
    select_compose_strategy,
    stage_ranges,
)
from karaokio.db.models import Song
from karaokio.errors import (
    AcquisitionFailed,
    Cancelled,
    ComposeFailed,
    InvalidTransition,
    LyricsSyncFailed,
    SeparationFailed,
    SongNotFound,
    StageFailure,
    StageTimeout,
)
from karaokio.services.cache_index import CacheIndex, artifact_size_bytes, cache_key
from karaokio.services.gateways.base import (
    AcquisitionConstraints,
    AcquisitionGateway,
    AcquisitionSource,
    BaseVideo,
    MediaTransformGateway,
    ProgressCallback,
)
from karaokio.services.lyrics import write_lrc
from karaokio.services.status_store import StatusStore

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Cancelled"
INTERRUPTED_ERROR = "Interrupted: process restarted"

_IN_PROGRESS = (
    SongStatus.ACQUIRING,
    SongStatus.SEPARATING,
    SongStatus.SYNCING,
    SongStatus.COMPOSING,
)


class SubmitOutcome(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_PROCESSING = "already_processing"


@dataclass(eq=False)
class JobHandle:
    """In-memory bookkeeping for one active run of one song."""
    song_id: str
    generation: int
    quality: str
    options: ProcessingOptions
    requested_at: datetime
    stage: Optional[Stage] = None
    cancelled: bool = False
    task: Optional[asyncio.Task[None]] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    created_at: float = field(default_factory=time.monotonic)

    def is_live(self) -> bool:
        return not self.cancelled


@dataclass
class _RunOutput:
    artifacts: ArtifactSet
    base_video: Optional[BaseVideo] = None


class JobOrchestrator:
    """Bounded worker pool executing the karaoke pipeline per song."""

    def __init__(
        self,
        store: StatusStore,
        cache: CacheIndex,
        acquisition: AcquisitionGateway,
        media: MediaTransformGateway,
        settings: Optional[Settings] = None,
    ):
        self._store = store
        self._cache = cache
        self._acquisition = acquisition
        self._media = media
        self._settings = settings or get_settings()
        self._ranges = stage_ranges(self._settings.stage_progress)
        self._max_workers = max(1, self._settings.max_concurrent_jobs)

        self._jobs: dict[str, JobHandle] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.PriorityQueue[tuple[datetime, int, JobHandle]] = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._workers: list[asyncio.Task[None]] = []

    # ── lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._workers:
            return
        for i in range(self._max_workers):
            self._workers.append(asyncio.create_task(self._worker(i)))
        logger.info(f"✅ JobOrchestrator started: {self._max_workers} workers")

    async def shutdown(self) -> None:
        """Stop the workers and abandon running jobs.

        Songs left mid-pipeline are marked interrupted by the next
        ``recover()``.
        """
        running = [h.task for h in self._jobs.values() if h.task is not None]
        for task in [*self._workers, *running]:
            task.cancel()
        await asyncio.gather(*self._workers, *running, return_exceptions=True)
        for handle in self._jobs.values():
            handle.done.set()
        self._workers.clear()
        self._jobs.clear()
        logger.info("🛑 JobOrchestrator shut down")

    async def recover(self) -> dict[str, int]:
        """Reconcile persisted state after a restart.

        Songs caught mid-pipeline have no live job any more and are failed
        with an ``Interrupted`` reason; songs still ``queued`` are
        re-admitted.
        """
        interrupted = 0
        for song in await self._store.songs_with_status(_IN_PROGRESS):
            if await self._store.fail_run(song.id, None, INTERRUPTED_ERROR):
                interrupted += 1
                logger.warning(f"⚠️ Song {song.id[:8]} was {song.status} at shutdown; marked failed")

        readmitted = 0
        for song in await self._store.songs_with_status([SongStatus.QUEUED]):
            options = ProcessingOptions()
            if song.quality in get_args(Quality):
                options = ProcessingOptions(quality=song.quality)
            if await self.submit(song.id, options) is SubmitOutcome.ACCEPTED:
                readmitted += 1

        if interrupted or readmitted:
            logger.info(f"♻️ Recovery: {interrupted} interrupted, {readmitted} re-queued")
        return {"interrupted": interrupted, "readmitted": readmitted}

    # ── control surface ────────────────────────────────────────────────

    async def submit(self, song_id: str, options: Optional[ProcessingOptions] = None) -> SubmitOutcome:
        """Start processing ``song_id`` asynchronously.

        A duplicate submit while a run is active is a no-op returning
        ``ALREADY_PROCESSING``.  Raises ``SongNotFound`` for unknown songs
        and ``InvalidTransition`` for a song that is ``playing``.
        """
        options = options or ProcessingOptions()
        async with self._lock:
            if song_id in self._jobs:
                logger.info(f"📥 Song {song_id[:8]} already processing; submit ignored")
                return SubmitOutcome.ALREADY_PROCESSING

            song = await self._store.get_song(song_id)
            quality = options.quality or self._settings.default_quality
            generation = await self._store.begin_run(song_id, quality)
            handle = JobHandle(
                song_id=song_id,
                generation=generation,
                quality=quality,
                options=options,
                requested_at=song.requested_at,
            )
            self._jobs[song_id] = handle
            self._queue.put_nowait((song.requested_at, next(self._seq), handle))

        logger.info(
            f"📥 Song {song_id[:8]} queued: {song.artist} - {song.title} "
            f"({quality}, run {generation}, depth {self._queue.qsize()})"
        )
        return SubmitOutcome.ACCEPTED

    async def cancel(self, song_id: str) -> None:
        """Fail the song with ``Cancelled`` and abandon its in-flight work.

        Raises ``SongNotFound`` for unknown songs and ``InvalidTransition``
        when there is nothing left to cancel.
        """
        async with self._lock:
            handle = self._jobs.pop(song_id, None)

        if handle is not None:
            handle.cancelled = True
            if handle.task is not None:
                handle.task.cancel()
            try:
                await self._store.fail_run(song_id, handle.generation, CANCELLED_ERROR)
            finally:
                handle.done.set()
            logger.info(f"🚫 Song {song_id[:8]} cancelled (run {handle.generation})")
            return

        song = await self._store.get_song(song_id)
        if not song.song_status.is_active:
            raise InvalidTransition(song.status, SongStatus.FAILED.value)
        await self._store.fail_run(song_id, None, CANCELLED_ERROR)
        logger.info(f"🚫 Song {song_id[:8]} cancelled (no live job)")

    async def get_status(self, song_id: str) -> Song:
        return await self._store.get_song(song_id)

    async def list_queue(self) -> list[Song]:
        return await self._store.active_queue()

    async def get_current_playing(self) -> Optional[Song]:
        return await self._store.current_playing()

    async def wait_for(self, song_id: str, timeout: Optional[float] = None) -> Song:
        """Block until the song's active run (if any) finishes, then return it."""
        handle = self._jobs.get(song_id)
        if handle is not None:
            await asyncio.wait_for(handle.done.wait(), timeout)
        return await self._store.get_song(song_id)

    def is_processing(self, song_id: str) -> bool:
        return song_id in self._jobs

    def status_snapshot(self) -> dict[str, int]:
        return {
            "depth": self._queue.qsize(),
            "running": sum(1 for h in self._jobs.values() if h.task is not None),
            "max_concurrent": self._max_workers,
            "tracked": len(self._jobs),
        }

    # ── workers ────────────────────────────────────────────────────────

    async def _worker(self, worker_id: int) -> None:
        logger.info(f"🔧 Worker {worker_id} started")
        while True:
            _, _, handle = await self._queue.get()
            try:
                if handle.cancelled:
                    continue
                handle.task = asyncio.create_task(self._run(handle))
                await asyncio.wait({handle.task})
            finally:
                self._queue.task_done()
                self._release(handle)
                elapsed = time.monotonic() - handle.created_at
                logger.info(f"🏁 Worker {worker_id} done with {handle.song_id[:8]} in {elapsed:.1f}s")

    def _release(self, handle: JobHandle) -> None:
        if self._jobs.get(handle.song_id) is handle:
            del self._jobs[handle.song_id]
        handle.done.set()

    # ── one run ────────────────────────────────────────────────────────

    async def _run(self, handle: JobHandle) -> None:
        song_id = handle.song_id
        try:
            song = await self._store.get_song(song_id)
            fingerprint = cache_key(song.title, song.artist, handle.quality)

            if handle.options.use_cache and self._settings.enable_cache:
                cached = await self._cache.lookup(fingerprint)
                if cached is not None:
                    if await self._store.finish_run(song_id, handle.generation, cached, fingerprint):
                        logger.info(f"⚡ Song {song_id[:8]} served from cache {fingerprint}")
                    return

            output = await self._run_pipeline(handle, song.title, song.artist)

            if self._settings.enable_cache and handle.is_live():
                await self._populate_cache(fingerprint, output, song.title, song.artist, handle.quality)

            if await self._store.finish_run(song_id, handle.generation, output.artifacts, fingerprint):
                logger.info(f"✅ Song {song_id[:8]} ready: {song.artist} - {song.title}")

        except Cancelled:
            logger.info(f"🚫 Run {handle.generation} of {song_id[:8]} superseded; stopping")
        except StageFailure as e:
            logger.error(f"❌ Song {song_id[:8]} failed: {e}")
            await self._store.fail_run(song_id, handle.generation, e.record)
        except SongNotFound:
            logger.warning(f"⚠️ Song {song_id[:8]} was removed while processing")
        except Exception as e:
            stage = handle.stage.value if handle.stage else "setup"
            logger.exception(f"❌ Song {song_id[:8]} crashed in {stage}: {e}")
            await self._store.fail_run(song_id, handle.generation, f"{stage}: {type(e).__name__}: {e}")

    async def _run_pipeline(self, handle: JobHandle, title: str, artist: str) -> _RunOutput:
        constraints = AcquisitionConstraints(
            quality=handle.quality,
            min_seeders=self._settings.min_seeders,
            prefer_official_karaoke=self._settings.prefer_official_karaoke,
        )
        video_task = self._start_base_video_lookup(handle, title, artist, constraints)
        base_video: Optional[BaseVideo] = None
        try:
            original = await self._acquire(handle, title, artist, constraints)
            separation = await self._separate(handle, original)
            lyrics, lyrics_path = await self._sync_lyrics(handle, title, artist, separation.instrumental)
            base_video = await self._collect_base_video(handle, video_task)
            video = await self._compose(handle, base_video, separation.instrumental, lyrics)
        finally:
            if video_task is not None:
                if base_video is None:
                    base_video = _finished_lookup(video_task)
                video_task.cancel()
            if base_video is not None and not self._settings.keep_base_video:
                await _remove_file(base_video.path)

        artifacts = ArtifactSet(
            original=original,
            instrumental=separation.instrumental,
            lyrics=lyrics_path,
            video=video,
        )
        return _RunOutput(artifacts=artifacts, base_video=base_video)

    # ── stage helpers ──────────────────────────────────────────────────

    async def _enter(self, handle: JobHandle, stage: Stage) -> None:
        handle.stage = stage
        span = self._ranges[stage]
        moved = await self._store.advance(handle.song_id, handle.generation, stage.status, span.start)
        if not moved or not handle.is_live():
            raise Cancelled(handle.song_id)
        logger.info(f"▶️ Song {handle.song_id[:8]} {stage.value} ({span.start}%)")

    async def _leave(self, handle: JobHandle, stage: Stage) -> None:
        span = self._ranges[stage]
        await self._store.record_progress(handle.song_id, handle.generation, stage.status, span.end)

    def _reporter(self, handle: JobHandle, stage: Stage) -> ProgressReporter:
        return ProgressReporter(
            self._store.record_progress,
            handle.song_id,
            handle.generation,
            stage,
            self._ranges[stage],
            is_live=lambda: handle.is_live() and handle.stage is stage,
        )

    def _deadline(self, handle: JobHandle, name: str, default: float) -> float:
        override = getattr(handle.options.deadlines, name)
        return override if override is not None else default

    # acquire

    def _start_base_video_lookup(
        self,
        handle: JobHandle,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[asyncio.Task[Optional[BaseVideo]]]:
        video_source = self._acquisition.video_source
        if video_source is None:
            return None
        seconds = self._deadline(handle, "video_lookup", self._settings.video_lookup_timeout)
        return asyncio.create_task(
            run_with_deadline(
                video_source.find_base_video(title, artist, constraints),
                seconds,
                "video_lookup",
                on_late_result=self._drop_late_base_video,
            )
        )

    def _drop_late_base_video(self, video: Optional[BaseVideo]) -> None:
        if video is not None and not self._settings.keep_base_video:
            _unlink_abandoned(video.path)

    async def _collect_base_video(
        self,
        handle: JobHandle,
        task: Optional[asyncio.Task[Optional[BaseVideo]]],
    ) -> Optional[BaseVideo]:
        if task is None:
            return None
        try:
            base_video = await task
        except Exception as e:
            logger.warning(f"⚠️ Base video lookup for {handle.song_id[:8]} failed: {e}")
            return None
        if base_video is None:
            logger.info(f"📼 No base video for {handle.song_id[:8]}; will use generative compose")
        return base_video

    async def _try_source(
        self,
        source: AcquisitionSource,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
        on_progress: ProgressCallback,
        seconds: float,
    ) -> Optional[str]:
        candidate = await source.find(title, artist, constraints)
        if candidate is None:
            return None
        logger.info(f"🎯 {source.name} candidate: {candidate.label}")
        return await source.fetch(candidate, on_progress, seconds)

    async def _acquire(
        self,
        handle: JobHandle,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> str:
        stage = Stage.ACQUIRE
        await self._enter(handle, stage)
        seconds = self._deadline(handle, "acquire", self._settings.acquire_source_timeout)
        reporter = self._reporter(handle, stage)
        failures: list[str] = []
        path: Optional[str] = None
        try:
            for source in self._acquisition.sources:
                try:
                    path = await run_with_deadline(
                        self._try_source(source, title, artist, constraints, reporter, seconds),
                        seconds,
                        f"acquire[{source.name}]",
                    )
                except StageTimeout as e:
                    logger.warning(f"⏱️ {e}; trying next source")
                    failures.append(str(e))
                    continue
                except Exception as e:
                    logger.warning(f"⚠️ Source {source.name} failed: {type(e).__name__}: {e}")
                    failures.append(f"{source.name}: {type(e).__name__}: {e}")
                    continue
                if path is None:
                    failures.append(f"{source.name}: no candidate")
                    continue
                logger.info(f"🎵 Acquired audio for {handle.song_id[:8]} from {source.name}")
                break
        finally:
            await reporter.close()

        if path is None:
            raise AcquisitionFailed("; ".join(failures) or "no acquisition sources configured")
        await self._store.set_artifacts(handle.song_id, handle.generation, ArtifactSet(original=path))
        await self._leave(handle, stage)
        return path

    # separate

    async def _separate(self, handle: JobHandle, audio_path: str) -> SeparationResult:
        stage = Stage.SEPARATE
        await self._enter(handle, stage)
        seconds = self._deadline(handle, "separate", self._settings.separate_timeout)
        output_format = handle.options.output_format or self._settings.default_output_format
        reporter = self._reporter(handle, stage)
        try:
            result = await run_with_deadline(
                self._media.separate_vocals(audio_path, handle.quality, reporter, output_format),
                seconds,
                stage.value,
            )
        except StageTimeout as e:
            raise SeparationFailed(str(e)) from e
        except Exception as e:
            raise SeparationFailed(f"{type(e).__name__}: {e}") from e
        finally:
            await reporter.close()

        await self._store.set_artifacts(
            handle.song_id, handle.generation, ArtifactSet(instrumental=result.instrumental)
        )
        await self._leave(handle, stage)
        return result

    # sync lyrics (soft)

    async def _sync_lyrics(
        self,
        handle: JobHandle,
        title: str,
        artist: str,
        instrumental: str,
    ) -> tuple[Optional[list[LyricLine]], Optional[str]]:
        stage = Stage.SYNC_LYRICS
        await self._enter(handle, stage)
        seconds = self._deadline(handle, "sync_lyrics", self._settings.lyrics_timeout)
        lines: Optional[list[LyricLine]] = None
        lyrics_path: Optional[str] = None
        try:
            lines = await run_with_deadline(
                self._media.fetch_and_sync_lyrics(title, artist, instrumental),
                seconds,
                stage.value,
            )
            if lines:
                lyrics_path = await write_lrc(lines, Path(instrumental).parent)
        except Exception as e:
            warning = LyricsSyncFailed(f"{type(e).__name__}: {e}")
            logger.warning(f"⚠️ {warning}; continuing without lyrics")
            lines = None
            lyrics_path = None

        if not lines:
            lines = None
            logger.info(f"📝 No lyrics for {handle.song_id[:8]}; composing instrumental-only")
        else:
            await self._store.set_artifacts(
                handle.song_id, handle.generation, ArtifactSet(lyrics=lyrics_path)
            )
        await self._leave(handle, stage)
        return lines, lyrics_path

    # compose

    async def _compose(
        self,
        handle: JobHandle,
        base_video: Optional[BaseVideo],
        instrumental: str,
        lyrics: Optional[list[LyricLine]],
    ) -> str:
        stage = Stage.COMPOSE
        await self._enter(handle, stage)
        seconds = self._deadline(handle, "compose", self._settings.compose_timeout)
        strategy = select_compose_strategy(base_video)
        # One directory per run: an abandoned compose must not overwrite a newer run's video.
        output_path = (
            Path(self._settings.output_dir)
            / handle.song_id
            / f"run-{handle.generation}"
            / strategy.output_name
        )
        await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
        base_path = base_video.path if (strategy.uses_base_video and base_video) else None
        logger.info(f"🎬 Composing {handle.song_id[:8]} via {strategy.name}")
        try:
            video = await run_with_deadline(
                self._media.compose_video(base_path, instrumental, lyrics, str(output_path)),
                seconds,
                stage.value,
                on_late_result=_unlink_abandoned,
            )
        except StageTimeout as e:
            raise ComposeFailed(str(e)) from e
        except Exception as e:
            raise ComposeFailed(f"{strategy.name}: {type(e).__name__}: {e}") from e
        await self._leave(handle, stage)
        return video

    # cache

    async def _populate_cache(
        self,
        fingerprint: str,
        output: _RunOutput,
        title: str,
        artist: str,
        quality: str,
    ) -> None:
        try:
            size = await artifact_size_bytes(output.artifacts)
            await self._cache.insert(
                fingerprint,
                output.artifacts,
                size,
                title=title,
                artist=artist,
                quality=quality,
                base_video_id=output.base_video.video_id if output.base_video else None,
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to cache {fingerprint}: {e}")


def _finished_lookup(task: asyncio.Task[Optional[BaseVideo]]) -> Optional[BaseVideo]:
    """Result of a lookup that completed but was never collected."""
    if not task.done() or task.cancelled() or task.exception() is not None:
        return None
    return task.result()


def _unlink_abandoned(path: Optional[str]) -> None:
    """Delete a file produced by a collaborator call that was abandoned."""
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
        logger.info(f"🗑️ Removed output of abandoned call: {path}")
    except OSError as e:
        logger.warning(f"⚠️ Could not remove abandoned output {path}: {e}")


async def _remove_file(path: str) -> None:
    try:
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        logger.debug(f"Removed base video {path}")
    except OSError as e:
        logger.warning(f"⚠️ Could not remove base video {path}: {e}")
