"""Pytest configuration and fixtures."""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from karaokio.config import Settings
from karaokio.contracts.song_types import ArtifactSet, LyricLine, SeparationResult
from karaokio.core.orchestrator import JobOrchestrator
from karaokio.db.database import build_session_factory, create_schema
from karaokio.services.cache_index import CacheIndex
from karaokio.services.gateways.base import (
    AcquisitionCandidate,
    AcquisitionGateway,
    BaseVideo,
)
from karaokio.services.status_store import StatusStore


def pytest_configure(config):
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ── collaborator fakes ─────────────────────────────────────────────────


async def _wait_ignoring_cancel(gate: asyncio.Event) -> None:
    """Wait for ``gate`` like a remote job that keeps running after a cancel."""
    try:
        await gate.wait()
    except asyncio.CancelledError:
        await gate.wait()


class FakeSource:
    """Acquisition source returning a fixed local file (or nothing)."""

    def __init__(self, name: str, path: Optional[str]):
        self.name = name
        self.path = path
        self.find_delay = 0.0
        self.fetch_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.found: list[str] = []
        self.fetch_calls = 0

    async def find(self, title, artist, constraints):
        self.found.append(title)
        if self.gate is not None:
            await self.gate.wait()
        if self.find_delay:
            await asyncio.sleep(self.find_delay)
        if self.path is None:
            return None
        return AcquisitionCandidate(source=self.name, locator=self.path, label=f"{artist} - {title}")

    async def fetch(self, candidate, on_progress, deadline):
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        on_progress(0.5)
        on_progress(1.0)
        return candidate.locator


class FakeVideoSource:
    """Karaoke video channel; writes a real file so cleanup can be observed."""

    def __init__(self, video_dir: Path):
        self.video_dir = video_dir
        self.available = True
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0
        self.returned: list[BaseVideo] = []

    async def find_base_video(self, title, artist, constraints):
        self.calls += 1
        if self.gate is not None:
            await _wait_ignoring_cancel(self.gate)
        if self.error is not None:
            raise self.error
        if not self.available:
            return None
        self.video_dir.mkdir(parents=True, exist_ok=True)
        path = self.video_dir / f"base_{self.calls}.mp4"
        path.write_bytes(b"base video")
        video = BaseVideo(path=str(path), video_id=f"vid{self.calls}", label=f"{artist} - {title} (Karaoke)")
        self.returned.append(video)
        return video


class FakeMedia:
    """Media transform collaborator producing real files under ``workdir``."""

    def __init__(self, workdir: Path):
        self.workdir = workdir
        self.lyrics: Optional[list[LyricLine]] = [
            LyricLine(0, 1500, "Is this the real life?"),
            LyricLine(1500, 3000, "Is this just fantasy?"),
        ]
        self.lyrics_error: Optional[Exception] = None
        self.separate_error: Optional[Exception] = None
        self.compose_error: Optional[Exception] = None
        self.separate_gate: Optional[asyncio.Event] = None
        self.lyrics_gate: Optional[asyncio.Event] = None
        self.compose_gate: Optional[asyncio.Event] = None
        self.calls: list[str] = []
        self.compose_args: list[tuple[Optional[str], Optional[list[LyricLine]]]] = []
        self.output_formats: list[str] = []
        self.written: list[str] = []

    async def separate_vocals(self, audio_path, quality, on_progress, output_format="wav"):
        self.calls.append("separate")
        self.output_formats.append(output_format)
        if self.separate_gate is not None:
            await self.separate_gate.wait()
        if self.separate_error is not None:
            raise self.separate_error
        stems = self.workdir / f"stems_{len(self.calls)}"
        stems.mkdir(parents=True, exist_ok=True)
        instrumental = stems / f"instrumental.{output_format}"
        vocals = stems / f"vocals.{output_format}"
        instrumental.write_bytes(b"instrumental")
        vocals.write_bytes(b"vocals")
        on_progress(0.25)
        on_progress(0.75)
        return SeparationResult(instrumental=str(instrumental), vocals=str(vocals))

    async def fetch_and_sync_lyrics(self, title, artist, instrumental_path):
        self.calls.append("lyrics")
        if self.lyrics_gate is not None:
            await self.lyrics_gate.wait()
        if self.lyrics_error is not None:
            raise self.lyrics_error
        return self.lyrics

    async def compose_video(self, base_video, instrumental, lyrics, output_path):
        self.calls.append("compose")
        self.compose_args.append((base_video, lyrics))
        run = len(self.compose_args)
        gate = self.compose_gate
        if gate is not None:
            await _wait_ignoring_cancel(gate)
        if self.compose_error is not None:
            raise self.compose_error
        Path(output_path).write_bytes(f"karaoke video from compose {run}".encode())
        self.written.append(output_path)
        return output_path


class FakeClock:
    """Strictly increasing clock: every call moves one second forward."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ── storage ────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database; runs use several sessions at once."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return StatusStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def cache(session_factory):
    return CacheIndex(session_factory)


@pytest.fixture
def make_song(store):
    """Create a singer plus a queued song."""
    async def _make(
        title: str = "Bohemian Rhapsody",
        artist: str = "Queen",
        *,
        user_name: str = "Freddie",
        requested_at: Optional[datetime] = None,
    ):
        user = await store.add_user(user_name, "bg-purple-500")
        return await store.add_song(user.id, title, artist, requested_at=requested_at)

    return _make


@pytest.fixture
def make_artifacts(tmp_path):
    """Write a complete artifact set to disk and return its paths."""
    def _make(name: str) -> ArtifactSet:
        directory = tmp_path / "artifacts" / name
        directory.mkdir(parents=True, exist_ok=True)
        files = {
            "original": directory / "original.mp3",
            "instrumental": directory / "instrumental.wav",
            "lyrics": directory / "lyrics.lrc",
            "video": directory / "final_karaoke.mp4",
        }
        for path in files.values():
            path.write_bytes(b"x" * 100)
        return ArtifactSet(**{k: str(v) for k, v in files.items()})

    return _make


# ── orchestrator wiring ────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        upload_dir=tmp_path / "uploads",
        output_dir=tmp_path / "output",
        download_dir=tmp_path / "downloads",
        video_dir=tmp_path / "videos",
        cache_dir=tmp_path / "cache",
        max_concurrent_jobs=2,
        acquire_source_timeout=5.0,
        video_lookup_timeout=5.0,
        separate_timeout=5.0,
        lyrics_timeout=5.0,
        compose_timeout=5.0,
        enable_rate_limit=False,
    )


def _audio_file(tmp_path: Path, name: str) -> str:
    library = tmp_path / "library"
    library.mkdir(parents=True, exist_ok=True)
    path = library / name
    path.write_bytes(b"audio " * 50)
    return str(path)


@pytest.fixture
def primary_source(tmp_path):
    return FakeSource("primary", _audio_file(tmp_path, "primary.mp3"))


@pytest.fixture
def backup_source(tmp_path):
    return FakeSource("backup", _audio_file(tmp_path, "backup.mp3"))


@pytest.fixture
def video_source(tmp_path):
    return FakeVideoSource(tmp_path / "videos")


@pytest.fixture
def media(tmp_path):
    return FakeMedia(tmp_path / "media")


@pytest.fixture
def acquisition(primary_source, backup_source, video_source):
    return AcquisitionGateway([primary_source, backup_source], video_source)


@pytest_asyncio.fixture
async def orchestrator(store, cache, acquisition, media, settings):
    orch = JobOrchestrator(store, cache, acquisition, media, settings)
    await orch.start()
    yield orch
    await orch.shutdown()
