"""Song lifecycle vocabulary shared by the store, the cache and the orchestrator.

``SongStatus`` is a closed enumeration; every status change goes through
``check_transition`` so that a move outside ``ALLOWED_TRANSITIONS`` is
rejected instead of silently written.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from karaokio.errors import InvalidTransition


class SongStatus(str, Enum):
    QUEUED = "queued"
    ACQUIRING = "acquiring"
    SEPARATING = "separating"
    SYNCING = "syncing"
    COMPOSING = "composing"
    READY = "ready"
    PLAYING = "playing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """True for the pipeline states ``queued`` through ``composing``."""
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in (SongStatus.COMPLETED, SongStatus.FAILED)


ACTIVE_STATUSES: frozenset[SongStatus] = frozenset({
    SongStatus.QUEUED,
    SongStatus.ACQUIRING,
    SongStatus.SEPARATING,
    SongStatus.SYNCING,
    SongStatus.COMPOSING,
})

# States from which a fresh run may begin (status is reset to queued).
RESTARTABLE_STATUSES: frozenset[SongStatus] = frozenset({
    SongStatus.QUEUED,
    SongStatus.READY,
    SongStatus.COMPLETED,
    SongStatus.FAILED,
})

ALLOWED_TRANSITIONS: dict[SongStatus, frozenset[SongStatus]] = {
    SongStatus.QUEUED: frozenset({SongStatus.ACQUIRING, SongStatus.READY, SongStatus.FAILED}),
    SongStatus.ACQUIRING: frozenset({SongStatus.SEPARATING, SongStatus.FAILED}),
    SongStatus.SEPARATING: frozenset({SongStatus.SYNCING, SongStatus.FAILED}),
    SongStatus.SYNCING: frozenset({SongStatus.COMPOSING, SongStatus.FAILED}),
    SongStatus.COMPOSING: frozenset({SongStatus.READY, SongStatus.FAILED}),
    SongStatus.READY: frozenset({SongStatus.PLAYING, SongStatus.QUEUED}),
    SongStatus.PLAYING: frozenset({SongStatus.COMPLETED}),
    SongStatus.COMPLETED: frozenset({SongStatus.QUEUED}),
    SongStatus.FAILED: frozenset({SongStatus.QUEUED}),
}


def check_transition(current: SongStatus, target: SongStatus) -> None:
    """Raise ``InvalidTransition`` unless ``current -> target`` is in the table."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


class Stage(str, Enum):
    """Ordered steps of the per-song pipeline."""
    ACQUIRE = "acquire"
    SEPARATE = "separate"
    SYNC_LYRICS = "sync_lyrics"
    COMPOSE = "compose"

    @property
    def status(self) -> SongStatus:
        return STAGE_STATUS[self]


STAGE_STATUS: dict[Stage, SongStatus] = {
    Stage.ACQUIRE: SongStatus.ACQUIRING,
    Stage.SEPARATE: SongStatus.SEPARATING,
    Stage.SYNC_LYRICS: SongStatus.SYNCING,
    Stage.COMPOSE: SongStatus.COMPOSING,
}


@dataclass(frozen=True)
class ArtifactSet:
    """Produced files for a song or cache entry.  Paths are plain strings."""
    original: Optional[str] = None
    instrumental: Optional[str] = None
    lyrics: Optional[str] = None
    video: Optional[str] = None

    # Files a cache entry cannot be served without.
    MANDATORY = ("instrumental", "video")

    def paths(self) -> list[str]:
        return [p for p in (self.original, self.instrumental, self.lyrics, self.video) if p]

    def missing_mandatory(self) -> list[str]:
        return [name for name in self.MANDATORY if not getattr(self, name)]

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "original": self.original,
            "instrumental": self.instrumental,
            "lyrics": self.lyrics,
            "video": self.video,
        }


@dataclass(frozen=True)
class LyricLine:
    """One synchronized lyric line; times in milliseconds from track start."""
    start_ms: int
    end_ms: int
    text: str


@dataclass(frozen=True)
class SeparationResult:
    instrumental: str
    vocals: str


Quality = Literal["fast", "balanced", "high"]


class StageDeadlines(BaseModel):
    """Per-run deadline overrides in seconds; unset fields use Settings."""
    acquire: Optional[float] = Field(default=None, gt=0)
    video_lookup: Optional[float] = Field(default=None, gt=0)
    separate: Optional[float] = Field(default=None, gt=0)
    sync_lyrics: Optional[float] = Field(default=None, gt=0)
    compose: Optional[float] = Field(default=None, gt=0)


class ProcessingOptions(BaseModel):
    """Options accepted by ``JobOrchestrator.submit``."""
    quality: Optional[Quality] = None  # None -> settings.default_quality
    output_format: Optional[Literal["wav", "mp3"]] = None
    use_cache: bool = True
    deadlines: StageDeadlines = Field(default_factory=StageDeadlines)
