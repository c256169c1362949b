"""Request/response models for the HTTP layer (camelCase on the wire)."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from karaokio.contracts.song_types import Quality
from karaokio.db.models import CacheEntry, Song


def to_camel(name: str) -> str:
    """Convert snake_case to camelCase for JSON serialization."""
    parts = name.split("_")
    return parts[0] + "".join(w.capitalize() for w in parts[1:])


class CamelModel(BaseModel):
    """Base model that serializes to camelCase on the wire.

    - Python code uses snake_case field names
    - ``model_dump(by_alias=True)`` returns camelCase (wire use)
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class UserOut(CamelModel):
    id: str
    name: str
    color: str


class ArtifactsOut(CamelModel):
    original: Optional[str] = None
    instrumental: Optional[str] = None
    lyrics: Optional[str] = None
    video: Optional[str] = None


class SongResponse(CamelModel):
    id: str
    user: Optional[UserOut] = None
    title: str
    artist: str
    status: str
    progress: int
    quality: Optional[str] = None
    error: Optional[str] = None
    fingerprint: Optional[str] = None
    artifacts: ArtifactsOut
    requested_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_song(cls, song: Song) -> "SongResponse":
        user = song.__dict__.get("user")  # only when eagerly loaded
        return cls(
            id=song.id,
            user=UserOut(id=user.id, name=user.name, color=user.color) if user else None,
            title=song.title,
            artist=song.artist,
            status=song.status,
            progress=song.progress,
            quality=song.quality,
            error=song.error,
            fingerprint=song.fingerprint,
            artifacts=ArtifactsOut(**song.artifacts.to_dict()),
            requested_at=song.requested_at,
            started_at=song.started_at,
            completed_at=song.completed_at,
        )


class AddSongRequest(CamelModel):
    user_name: str = Field(..., min_length=1, max_length=100)
    search_query: str = Field(..., min_length=1, max_length=300)
    processing_quality: Optional[Quality] = None
    output_format: Optional[Literal["wav", "mp3"]] = None


class AddSongResponse(CamelModel):
    success: bool
    song_id: str
    title: str
    artist: str
    outcome: str
    message: str


class QueueResponse(CamelModel):
    songs: list[SongResponse]


class CurrentSongResponse(CamelModel):
    song: Optional[SongResponse] = None


class CompleteResponse(CamelModel):
    completed_song_id: str
    next_song_id: Optional[str] = None


class SubmitResponse(CamelModel):
    song_id: str
    outcome: str


class CacheStatsResponse(CamelModel):
    count: int
    total_size: int
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class CacheEntryOut(CamelModel):
    fingerprint: str
    title: str
    artist: str
    quality: str
    artifacts: ArtifactsOut
    base_video_id: Optional[str] = None
    size_bytes: int
    created_at: datetime
    last_accessed: datetime

    @classmethod
    def from_entry(cls, entry: CacheEntry) -> "CacheEntryOut":
        return cls(
            fingerprint=entry.fingerprint,
            title=entry.title,
            artist=entry.artist,
            quality=entry.quality,
            artifacts=ArtifactsOut(**entry.artifacts.to_dict()),
            base_video_id=entry.base_video_id,
            size_bytes=entry.size_bytes,
            created_at=entry.created_at,
            last_accessed=entry.last_accessed,
        )


class CacheEntriesResponse(CamelModel):
    entries: list[CacheEntryOut]


class EvictRequest(CamelModel):
    max_age_days: Optional[int] = Field(default=None, ge=0)
    max_entries: Optional[int] = Field(default=None, ge=0)


class EvictResponse(CamelModel):
    removed: list[str]
    skipped: list[str]
    files_deleted: int
