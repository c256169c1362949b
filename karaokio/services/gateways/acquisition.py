"""
Acquisition adapters.

Audio sources (tried in the order given by ``settings.acquisition_sources``):

- ``catalog``: remote audio catalog searched by several query variants;
  results need enough seeders and must name both title and artist.
- ``uploads``: audio files an operator dropped into the upload directory,
  matched by exact filename pattern first, then by fuzzy name match.

Companion channel:

- ``KaraokeVideoSource`` searches a video service for an existing karaoke
  video whose audio track can later be replaced with the instrumental.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Optional

import httpx

from karaokio.config import Settings
from karaokio.services.gateways.base import (
    AcquisitionCandidate,
    AcquisitionConstraints,
    AcquisitionGateway,
    AcquisitionSource,
    BaseVideo,
    ProgressCallback,
)
from karaokio.services.gateways.http_client import GatewayError, ServiceClient

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".mp3", ".wav", ".flac", ".m4a", ".aac", ".ogg")

KARAOKE_TERMS = ("karaoke", "instrumental", "lyrics", "sing along", "backing track")

# (substring, weight) applied to a lower-cased video title.
_VIDEO_TERM_WEIGHTS: tuple[tuple[str, float], ...] = (
    ("instrumental", 0.3),
    ("backing track", 0.25),
    ("sing along", 0.2),
    ("lyrics", 0.15),
    ("cover", -0.2),
    ("live", -0.15),
    ("acoustic", -0.1),
)

MIN_VIDEO_SCORE = 0.3


def safe_filename(label: str) -> str:
    """``label`` with every non-alphanumeric character replaced by ``_``,
    suffixed with a short hash so distinct labels never collide."""
    digest = hashlib.md5(label.encode()).hexdigest()[:8]
    return f"{re.sub(r'[^A-Za-z0-9]', '_', label)}_{digest}"


def catalog_queries(title: str, artist: str) -> list[str]:
    return [
        f"{artist} {title}",
        f"{title} {artist}",
        f"{artist} - {title}",
        title,
    ]


def video_queries(title: str, artist: str) -> list[str]:
    return [
        f"{artist} {title} karaoke",
        f"{title} {artist} karaoke",
        f"{artist} - {title} karaoke",
        f"{title} karaoke lyrics",
        f"{artist} {title} instrumental karaoke",
        f"{title} sing along karaoke",
    ]


def score_karaoke_video(video_title: str, title: str, artist: str) -> float:
    """Relevance of a video title as a karaoke backing for ``artist - title``."""
    text = video_title.lower()
    score = 0.0
    if artist.lower() in text:
        score += 0.3
    if title.lower() in text:
        score += 0.3
    if "karaoke" in text:
        score += 0.4
        if "official" in text:
            score += 0.2
    for term, weight in _VIDEO_TERM_WEIGHTS:
        if term in text:
            score += weight
    if "hd" in text or "1080p" in text:
        score += 0.1
    return min(score, 1.0)


def is_karaoke_candidate(video_title: str, title: str, artist: str) -> bool:
    text = video_title.lower()
    names_song = artist.lower() in text or title.lower() in text
    return names_song and any(term in text for term in KARAOKE_TERMS)


# ── catalog ───────────────────────────────────────────────────────────


class CatalogSource(ServiceClient):
    """Search-and-download audio catalog.

    ``GET /search?q=&limit=`` returns ``{"results": [{"title", "seeders",
    "url", "size"}]}``; ``url`` is streamed to the download directory.
    """

    name = "catalog"
    service_name = "Catalog"

    def __init__(self, base_url: str, download_dir: Path, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.download_dir = Path(download_dir)

    async def search(self, query: str, limit: int = 20) -> list[dict[str, Any]]:
        payload = await self.request_json("GET", "/search", params={"q": query, "limit": limit})
        results = (payload or {}).get("results") or []
        return [r for r in results if isinstance(r, dict) and r.get("url")]

    async def find(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[AcquisitionCandidate]:
        title_lower = title.lower()
        artist_lower = artist.lower()
        for query in catalog_queries(title, artist):
            try:
                results = await self.search(query)
            except (httpx.HTTPError, GatewayError, ValueError) as e:
                logger.warning(f"⚠️ Catalog search failed for '{query}': {e}")
                continue
            matches = [
                r for r in results
                if int(r.get("seeders") or 0) >= constraints.min_seeders
                and title_lower in str(r.get("title", "")).lower()
                and artist_lower in str(r.get("title", "")).lower()
            ]
            if not matches:
                continue
            best = max(matches, key=lambda r: int(r.get("seeders") or 0))
            logger.info(
                f"🔎 Catalog match for '{query}': {best['title']} "
                f"({best.get('seeders', 0)} seeders)"
            )
            return AcquisitionCandidate(
                source=self.name,
                locator=str(best["url"]),
                label=f"{artist} - {title}",
                score=float(best.get("seeders") or 0),
                extra={"size": best.get("size"), "result_title": best.get("title")},
            )
        logger.info(f"🔎 No catalog match for {artist} - {title}")
        return None

    async def fetch(
        self,
        candidate: AcquisitionCandidate,
        on_progress: ProgressCallback,
        deadline: float,
    ) -> str:
        suffix = Path(httpx.URL(candidate.locator).path).suffix.lower()
        if suffix not in AUDIO_EXTENSIONS:
            suffix = ".mp3"
        destination = self.download_dir / f"{safe_filename(candidate.label)}{suffix}"
        path = await asyncio.wait_for(
            self.download(candidate.locator, destination, on_progress),
            timeout=deadline,
        )
        return str(path)


# ── uploads ───────────────────────────────────────────────────────────


class UploadsSource:
    """Audio files already present in the upload directory."""

    name = "uploads"

    def __init__(self, upload_dir: Path):
        self.upload_dir = Path(upload_dir)

    @staticmethod
    def exact_patterns(title: str, artist: str) -> list[str]:
        return [
            f"{artist} - {title}.mp3",
            f"{title} - {artist}.mp3",
            f"{artist}_{title}.mp3",
            f"{title}_{artist}.mp3",
            f"{title}.mp3",
            f"{artist}.mp3",
        ]

    def _scan(self, title: str, artist: str) -> Optional[Path]:
        if not self.upload_dir.is_dir():
            return None
        for filename in self.exact_patterns(title, artist):
            path = self.upload_dir / filename
            if path.is_file():
                logger.info(f"✅ Found local upload: {filename}")
                return path

        title_lower = title.lower()
        artist_lower = artist.lower()
        for path in sorted(self.upload_dir.iterdir()):
            if path.suffix.lower() not in AUDIO_EXTENSIONS or not path.is_file():
                continue
            name = path.name.lower()
            if title_lower in name and artist_lower in name:
                logger.info(f"✅ Found fuzzy upload match: {path.name}")
                return path
        return None

    async def find(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[AcquisitionCandidate]:
        path = await asyncio.to_thread(self._scan, title, artist)
        if path is None:
            return None
        return AcquisitionCandidate(source=self.name, locator=str(path), label=path.name)

    async def fetch(
        self,
        candidate: AcquisitionCandidate,
        on_progress: ProgressCallback,
        deadline: float,
    ) -> str:
        if not Path(candidate.locator).is_file():
            raise FileNotFoundError(candidate.locator)
        on_progress(1.0)
        return candidate.locator


# ── base video ────────────────────────────────────────────────────────


class KaraokeVideoSource(ServiceClient):
    """Existing karaoke videos from a video search service.

    ``GET /videos/search?q=`` returns ``{"videos": [{"id", "title",
    "duration", "url"}]}``; ``GET /videos/{id}/download`` streams the file.
    """

    service_name = "VideoSearch"

    def __init__(self, base_url: str, video_dir: Path, max_results: int = 5, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.video_dir = Path(video_dir)
        self.max_results = max_results

    async def search_karaoke_videos(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> list[tuple[float, dict[str, Any]]]:
        """Scored, de-duplicated candidates, best first."""
        scored: dict[str, tuple[float, dict[str, Any]]] = {}
        for query in video_queries(title, artist):
            try:
                payload = await self.request_json("GET", "/videos/search", params={"q": query})
            except (httpx.HTTPError, GatewayError, ValueError) as e:
                logger.warning(f"⚠️ Video search failed for '{query}': {e}")
                continue
            for video in (payload or {}).get("videos") or []:
                if not isinstance(video, dict) or not video.get("id") or not video.get("title"):
                    continue
                if float(video.get("duration") or 0) > constraints.max_video_seconds:
                    continue
                if not is_karaoke_candidate(video["title"], title, artist):
                    continue
                score = score_karaoke_video(video["title"], title, artist)
                if not constraints.prefer_official_karaoke and "official" in video["title"].lower():
                    score = max(score - 0.2, 0.0)
                if score > MIN_VIDEO_SCORE and str(video["id"]) not in scored:
                    scored[str(video["id"])] = (score, video)
        ranked = sorted(scored.values(), key=lambda item: item[0], reverse=True)
        return ranked[: self.max_results]

    async def find_base_video(
        self,
        title: str,
        artist: str,
        constraints: AcquisitionConstraints,
    ) -> Optional[BaseVideo]:
        ranked = await self.search_karaoke_videos(title, artist, constraints)
        if not ranked:
            logger.info(f"📼 No karaoke video found for {artist} - {title}")
            return None

        for score, video in ranked:
            video_id = str(video["id"])
            logger.info(f"📼 Trying karaoke video {video['title']} (score: {score:.2f})")
            destination = self.video_dir / f"{safe_filename(f'{artist} - {title}')}_{video_id}.mp4"
            try:
                path = await self.download(f"/videos/{video_id}/download", destination)
            except (httpx.HTTPError, GatewayError, OSError) as e:
                logger.warning(f"⚠️ Karaoke video {video_id} download failed: {e}")
                continue
            return BaseVideo(path=str(path), video_id=video_id, label=str(video["title"]))
        return None


# ── factory ───────────────────────────────────────────────────────────


def build_acquisition_gateway(settings: Settings) -> AcquisitionGateway:
    """Instantiate the configured ranked sources and the video channel."""
    client_kwargs: dict[str, Any] = {
        "timeout": settings.service_timeout,
        "cb_threshold": settings.service_cb_threshold,
        "cb_cooldown": float(settings.service_cb_cooldown),
    }
    sources: list[AcquisitionSource] = []
    for name in settings.acquisition_sources:
        if name == "catalog":
            if not settings.catalog_service_url:
                logger.warning("⚠️ catalog source configured without catalog_service_url; skipping")
                continue
            sources.append(
                CatalogSource(settings.catalog_service_url, settings.download_dir, **client_kwargs)
            )
        elif name == "uploads":
            sources.append(UploadsSource(settings.upload_dir))
        else:
            raise ValueError(f"Unknown acquisition source: {name}")

    video_source = None
    if settings.video_service_url:
        video_source = KaraokeVideoSource(
            settings.video_service_url, settings.video_dir, **client_kwargs
        )

    logger.info(
        f"🎯 Acquisition sources: {[s.name for s in sources]}"
        + (" + karaoke video lookup" if video_source else "")
    )
    return AcquisitionGateway(sources, video_source)
