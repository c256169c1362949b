"""Collaborator contracts the orchestrator depends on.

The orchestrator never imports a concrete adapter; it talks to these
protocols only.  Adapters signal failure by raising any exception; a
``None`` return means "nothing found" and is not an error.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from karaokio.contracts.song_types import LyricLine, SeparationResult

# Fraction complete in [0, 1].  May be called from any thread.
ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class AcquisitionConstraints:
    quality: str
    min_seeders: int = 0
    max_video_seconds: int = 600
    prefer_official_karaoke: bool = True


@dataclass(frozen=True)
class AcquisitionCandidate:
    """Something a source believes it can turn into a local audio file."""
    source: str
    locator: str  # URL or filesystem path, meaning is source-specific
    label: str
    score: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BaseVideo:
    """A downloaded karaoke video whose audio track can be replaced."""
    path: str
    video_id: Optional[str] = None
    label: str = ""


@runtime_checkable
class AcquisitionSource(Protocol):
    name: str

    async def find(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[AcquisitionCandidate]: ...

    async def fetch(
        self,
        candidate: AcquisitionCandidate,
        on_progress: ProgressCallback,
        deadline: float,
    ) -> str: ...


@runtime_checkable
class BaseVideoSource(Protocol):
    async def find_base_video(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[BaseVideo]: ...


class AcquisitionGateway:
    """Ranked audio sources plus the optional companion base-video channel.

    ``sources`` is data: the orchestrator tries them in list order and the
    first one that yields a file wins.
    """

    def __init__(
        self,
        sources: Sequence[AcquisitionSource],
        video_source: Optional[BaseVideoSource] = None,
    ):
        self.sources: list[AcquisitionSource] = list(sources)
        self.video_source = video_source

    @property
    def source_names(self) -> list[str]:
        return [s.name for s in self.sources]


@runtime_checkable
class MediaTransformGateway(Protocol):
    async def separate_vocals(
        self,
        audio_path: str,
        quality: str,
        on_progress: ProgressCallback,
        output_format: str = "wav",
    ) -> SeparationResult: ...

    async def fetch_and_sync_lyrics(
        self,
        title: str,
        artist: str,
        instrumental_path: str,
    ) -> Optional[list[LyricLine]]: ...

    async def compose_video(
        self,
        base_video: Optional[str],
        instrumental: str,
        lyrics: Optional[list[LyricLine]],
        output_path: str,
    ) -> str: ...
