"""
Cache Index: content-addressed reuse of finished artifact sets.

A fingerprint is derived from the case-folded, whitespace-trimmed
(title, artist, quality) triple.  Entries are self-healing: any read that
finds a mandatory file (instrumental, video) missing deletes the entry and
reports a miss.  Eviction removes entries by age and by count, least
recently accessed first.

Every operation on a fingerprint runs under that fingerprint's lock, so an
eviction sweep can never delete files out from under a lookup that is
serving them, and a lookup never observes a half-evicted entry.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaokio.contracts.song_types import ArtifactSet
from karaokio.core.keyed_lock import KeyedLock
from karaokio.db.models import CacheEntry, utc_now
from karaokio.errors import CacheEntryNotFound, CacheIntegrityError

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 16


def _normalize(value: str) -> str:
    return value.strip().casefold()


def cache_key(title: str, artist: str, quality: str) -> str:
    """Deterministic fingerprint for a (title, artist, quality) triple.

    The normalized triple is JSON-encoded before hashing so that field
    boundaries cannot collide (``("a_b", "c")`` vs ``("a", "b_c")``).
    """
    key_str = json.dumps([_normalize(title), _normalize(artist), _normalize(quality)])
    return hashlib.sha256(key_str.encode()).hexdigest()[:FINGERPRINT_LENGTH]


async def artifact_size_bytes(artifacts: ArtifactSet) -> int:
    """Total on-disk size of the artifact files that exist."""
    def _sizes() -> int:
        total = 0
        for raw in artifacts.paths():
            path = Path(raw)
            if path.is_file():
                total += path.stat().st_size
        return total

    return await asyncio.to_thread(_sizes)


@dataclass
class CacheStats:
    count: int
    total_size: int
    oldest: Optional[datetime]
    newest: Optional[datetime]

    def to_dict(self) -> dict[str, object]:
        return {
            "count": self.count,
            "total_size": self.total_size,
            "oldest": self.oldest.isoformat() if self.oldest else None,
            "newest": self.newest.isoformat() if self.newest else None,
        }


@dataclass
class EvictionReport:
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # accessed during the sweep
    files_deleted: int = 0


class CacheIndex:
    """Fingerprint -> artifact set map backed by the ``cache_entries`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._locks = KeyedLock()

    # ── reads ──────────────────────────────────────────────────────────

    async def lookup(self, fingerprint: str) -> Optional[ArtifactSet]:
        """Return the cached artifacts, or ``None`` on a miss.

        The existence check and the ``last_accessed`` bump happen under the
        fingerprint lock in a single transaction.
        """
        async with self._locks.hold(fingerprint):
            async with self._session_factory() as session:
                entry = await session.get(CacheEntry, fingerprint)
                if entry is None:
                    logger.info(f"❌ Cache miss for {fingerprint}")
                    return None
                existing = await _existing_paths(entry.artifacts)
                try:
                    _verify_files(entry, existing)
                except CacheIntegrityError as e:
                    logger.warning(f"⚠️ {e}; removing from cache")
                    await session.delete(entry)
                    await session.commit()
                    return None

                entry.last_accessed = self._clock()
                artifacts = _existing_artifacts(entry.artifacts, existing)
                await session.commit()

        logger.info(f"✅ Cache hit for {fingerprint}")
        return artifacts

    async def lookup_song(self, title: str, artist: str, quality: str) -> Optional[ArtifactSet]:
        return await self.lookup(cache_key(title, artist, quality))

    async def get_entry(self, fingerprint: str) -> CacheEntry:
        """Raw entry without verification or access bump."""
        async with self._session_factory() as session:
            entry = await session.get(CacheEntry, fingerprint)
        if entry is None:
            raise CacheEntryNotFound(fingerprint)
        return entry

    async def list_entries(self) -> list[CacheEntry]:
        """All entries, most recently accessed first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CacheEntry).order_by(CacheEntry.last_accessed.desc())
            )
            return list(result.scalars().all())

    async def stats(self) -> CacheStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(CacheEntry.fingerprint),
                    func.coalesce(func.sum(CacheEntry.size_bytes), 0),
                    func.min(CacheEntry.created_at),
                    func.max(CacheEntry.created_at),
                )
            )
            count, total_size, oldest, newest = result.one()
        return CacheStats(
            count=int(count or 0),
            total_size=int(total_size or 0),
            oldest=oldest,
            newest=newest,
        )

    # ── writes ─────────────────────────────────────────────────────────

    async def insert(
        self,
        fingerprint: str,
        artifacts: ArtifactSet,
        size_bytes: int,
        *,
        title: str,
        artist: str,
        quality: str,
        base_video_id: str | None = None,
    ) -> CacheEntry:
        """Upsert an entry.  ``instrumental`` and ``video`` are mandatory."""
        missing = artifacts.missing_mandatory()
        if missing:
            raise ValueError(f"Cannot cache {fingerprint}: missing {', '.join(missing)}")

        now = self._clock()
        async with self._locks.hold(fingerprint):
            async with self._session_factory() as session:
                entry = await session.get(CacheEntry, fingerprint)
                if entry is None:
                    entry = CacheEntry(fingerprint=fingerprint)
                    session.add(entry)
                entry.title = title
                entry.artist = artist
                entry.quality = quality
                entry.original_path = artifacts.original
                entry.instrumental_path = artifacts.instrumental  # type: ignore[assignment]
                entry.lyrics_path = artifacts.lyrics
                entry.video_path = artifacts.video  # type: ignore[assignment]
                entry.base_video_id = base_video_id
                entry.size_bytes = size_bytes
                entry.created_at = now
                entry.last_accessed = now
                await session.commit()

        logger.info(
            f"💾 Cached {artist} - {title} ({quality}) as {fingerprint} "
            f"[{size_bytes / 1024 / 1024:.1f}MB]"
        )
        return entry

    async def remove(self, fingerprint: str) -> bool:
        """Delete the entry row (files are left alone)."""
        async with self._locks.hold(fingerprint):
            async with self._session_factory() as session:
                entry = await session.get(CacheEntry, fingerprint)
                if entry is None:
                    return False
                await session.delete(entry)
                await session.commit()
        return True

    async def evict(self, max_age_days: int, max_entries: int) -> EvictionReport:
        """Remove entries idle for more than ``max_age_days`` and, of the rest,
        all but the ``max_entries`` most recently accessed.  Backing files of
        removed entries are deleted.

        Entries whose ``last_accessed`` was bumped after the sweep started are
        never removed.
        """
        if max_age_days < 0 or max_entries < 0:
            raise ValueError("max_age_days and max_entries must be non-negative")

        sweep_started = self._clock()
        cutoff = sweep_started - timedelta(days=max_age_days)
        report = EvictionReport()

        async with self._session_factory() as session:
            result = await session.execute(
                select(CacheEntry.fingerprint, CacheEntry.last_accessed).order_by(
                    CacheEntry.last_accessed.desc(), CacheEntry.fingerprint.asc()
                )
            )
            rows = list(result.all())

        aged = [fp for fp, last in rows if last < cutoff]
        fresh = [fp for fp, last in rows if last >= cutoff]
        candidates = aged + fresh[max_entries:]

        for fingerprint in candidates:
            async with self._locks.hold(fingerprint):
                async with self._session_factory() as session:
                    entry = await session.get(CacheEntry, fingerprint)
                    if entry is None:
                        continue
                    if entry.last_accessed >= sweep_started:
                        report.skipped.append(fingerprint)
                        continue
                    report.files_deleted += await _delete_files(entry.artifacts)
                    await session.delete(entry)
                    await session.commit()
            report.removed.append(fingerprint)
            logger.info(f"🗑️ Evicted cache entry {fingerprint}")

        logger.info(
            f"🧹 Cache sweep removed {len(report.removed)} entries "
            f"(max_age_days={max_age_days}, max_entries={max_entries}, "
            f"skipped {len(report.skipped)} in use)"
        )
        return report


class EvictionSweeper:
    """Background task that runs ``CacheIndex.evict`` on an interval."""

    def __init__(
        self,
        cache: CacheIndex,
        interval_seconds: float,
        max_age_days: int,
        max_entries: int,
    ):
        self._cache = cache
        self._interval = interval_seconds
        self._max_age_days = max_age_days
        self._max_entries = max_entries
        self._task: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._cache.evict(self._max_age_days, self._max_entries)
            except Exception as e:
                logger.warning(f"⚠️ Cache sweep failed: {e}")


# ── file helpers ───────────────────────────────────────────────────────


async def _existing_paths(artifacts: ArtifactSet) -> set[str]:
    def _check() -> set[str]:
        return {p for p in artifacts.paths() if Path(p).is_file()}

    return await asyncio.to_thread(_check)


def _verify_files(entry: CacheEntry, existing: set[str]) -> None:
    artifacts = entry.artifacts
    missing = [
        name
        for name in ArtifactSet.MANDATORY
        if not getattr(artifacts, name) or getattr(artifacts, name) not in existing
    ]
    if missing:
        raise CacheIntegrityError(entry.fingerprint, missing)


def _existing_artifacts(artifacts: ArtifactSet, existing: set[str]) -> ArtifactSet:
    """Drop optional paths whose files are gone."""
    return ArtifactSet(
        original=artifacts.original if artifacts.original in existing else None,
        instrumental=artifacts.instrumental,
        lyrics=artifacts.lyrics if artifacts.lyrics in existing else None,
        video=artifacts.video,
    )


async def _delete_files(artifacts: ArtifactSet) -> int:
    def _unlink_all() -> int:
        deleted = 0
        for raw in artifacts.paths():
            path = Path(raw)
            try:
                if path.exists():
                    path.unlink()
                    deleted += 1
                    logger.debug(f"Deleted cached file: {path.name}")
            except OSError as e:
                logger.warning(f"⚠️ Failed to delete cached file {path}: {e}")
        return deleted

    return await asyncio.to_thread(_unlink_all)
