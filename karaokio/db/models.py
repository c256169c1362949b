"""
SQLAlchemy ORM models for Karaokio.

Tables:
- users: Singers who requested songs (display name + avatar colour)
- songs: One row per song request with lifecycle state, progress and artifacts
- cache_entries: Previously produced artifact sets keyed by fingerprint
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from karaokio.contracts.song_types import ArtifactSet, SongStatus
from karaokio.db.database import Base


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way out; values are re-tagged as UTC on read so
    comparisons against ``utc_now()`` never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class User(Base):
    """Singer identity.  Opaque to the pipeline; shown by the presentation layer."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    songs: Mapped[list["Song"]] = relationship(
        "Song",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User {self.id} {self.name!r}>"


class Song(Base):
    """
    One song request and its current job run.

    ``run_generation`` is the generation token of the latest run.  Writes
    from the orchestrator carry the generation they belong to and are
    discarded when it no longer matches.
    """
    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # As requested; never normalized in place
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    artist: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=SongStatus.QUEUED.value,
        nullable=False,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quality: Mapped[str | None] = mapped_column(String(20), nullable=True)
    run_generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Artifacts
    original_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    instrumental_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    lyrics_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    requested_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="songs")

    @property
    def song_status(self) -> SongStatus:
        return SongStatus(self.status)

    @property
    def artifacts(self) -> ArtifactSet:
        return ArtifactSet(
            original=self.original_path,
            instrumental=self.instrumental_path,
            lyrics=self.lyrics_path,
            video=self.video_path,
        )

    def apply_artifacts(self, artifacts: ArtifactSet) -> None:
        """Copy non-empty artifact paths onto the row."""
        if artifacts.original:
            self.original_path = artifacts.original
        if artifacts.instrumental:
            self.instrumental_path = artifacts.instrumental
        if artifacts.lyrics:
            self.lyrics_path = artifacts.lyrics
        if artifacts.video:
            self.video_path = artifacts.video

    def clear_artifacts(self) -> None:
        self.original_path = None
        self.instrumental_path = None
        self.lyrics_path = None
        self.video_path = None

    def __repr__(self) -> str:
        return f"<Song {self.id} {self.artist} - {self.title} [{self.status} {self.progress}%]>"


class CacheEntry(Base):
    """
    Previously produced artifact set.

    Valid only while ``instrumental_path`` and ``video_path`` exist on disk;
    the cache index purges the row on the read that finds them missing.
    """
    __tablename__ = "cache_entries"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    artist: Mapped[str] = mapped_column(String(255), nullable=False)
    quality: Mapped[str] = mapped_column(String(20), nullable=False)

    original_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    instrumental_path: Mapped[str] = mapped_column(Text, nullable=False)
    lyrics_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_path: Mapped[str] = mapped_column(Text, nullable=False)
    base_video_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    last_accessed: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
        index=True,
    )

    @property
    def artifacts(self) -> ArtifactSet:
        return ArtifactSet(
            original=self.original_path,
            instrumental=self.instrumental_path,
            lyrics=self.lyrics_path,
            video=self.video_path,
        )

    def __repr__(self) -> str:
        return f"<CacheEntry {self.fingerprint} {self.artist} - {self.title} ({self.quality})>"
