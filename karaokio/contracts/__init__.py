"""Typed contracts shared across Karaokio layers."""
from __future__ import annotations

from karaokio.contracts.song_types import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    ArtifactSet,
    LyricLine,
    ProcessingOptions,
    SeparationResult,
    SongStatus,
    Stage,
    StageDeadlines,
    check_transition,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "ArtifactSet",
    "LyricLine",
    "ProcessingOptions",
    "SeparationResult",
    "SongStatus",
    "Stage",
    "StageDeadlines",
    "check_transition",
]
