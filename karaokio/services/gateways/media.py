"""
HTTP client for the media transform service.

Separation is a long-running job: ``POST /separations`` returns a job id
which is polled at ``GET /separations/{job_id}`` until it reports
``complete`` or ``failed``.  Lyrics sync and composition are single
request/response calls.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from karaokio.config import Settings
from karaokio.contracts.song_types import LyricLine, SeparationResult
from karaokio.services.gateways.base import ProgressCallback
from karaokio.services.gateways.http_client import ServiceClient, ServiceError

logger = logging.getLogger(__name__)


class HttpMediaTransformClient(ServiceClient):
    service_name = "MediaTransform"

    def __init__(self, base_url: str, poll_interval: float = 2.0, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.poll_interval = poll_interval

    async def separate_vocals(
        self,
        audio_path: str,
        quality: str,
        on_progress: ProgressCallback,
        output_format: str = "wav",
    ) -> SeparationResult:
        submitted = await self.request_json(
            "POST",
            "/separations",
            json={"audio_path": audio_path, "quality": quality, "output_format": output_format},
        )
        job_id = (submitted or {}).get("job_id")
        if not job_id:
            raise ServiceError("MediaTransform did not return a separation job_id")
        logger.info(f"🎛️ Separation job {job_id} submitted ({quality})")

        while True:
            job = await self.request_json("GET", f"/separations/{job_id}") or {}
            status = job.get("status")
            if job.get("progress") is not None:
                on_progress(max(0.0, min(float(job["progress"]), 1.0)))
            if status == "complete":
                instrumental = job.get("instrumental")
                vocals = job.get("vocals")
                if not instrumental or not vocals:
                    raise ServiceError(f"Separation job {job_id} completed without output paths")
                on_progress(1.0)
                return SeparationResult(instrumental=str(instrumental), vocals=str(vocals))
            if status == "failed":
                raise ServiceError(f"Separation job {job_id} failed: {job.get('error', 'unknown error')}")
            await asyncio.sleep(self.poll_interval)

    async def fetch_and_sync_lyrics(
        self,
        title: str,
        artist: str,
        instrumental_path: str,
    ) -> Optional[list[LyricLine]]:
        payload = await self.request_json(
            "POST",
            "/lyrics/sync",
            json={"title": title, "artist": artist, "audio_path": instrumental_path},
            allow_404=True,
        )
        if payload is None:
            return None
        lines = [
            LyricLine(
                start_ms=int(raw["start_ms"]),
                end_ms=int(raw["end_ms"]),
                text=str(raw.get("text", "")),
            )
            for raw in payload.get("lines") or []
        ]
        return lines or None

    async def compose_video(
        self,
        base_video: Optional[str],
        instrumental: str,
        lyrics: Optional[list[LyricLine]],
        output_path: str,
    ) -> str:
        body: dict[str, Any] = {
            "base_video": base_video,
            "instrumental": instrumental,
            "output_path": output_path,
            "lyrics": [
                {"start_ms": line.start_ms, "end_ms": line.end_ms, "text": line.text}
                for line in lyrics or []
            ],
        }
        payload = await self.request_json("POST", "/videos/compose", json=body) or {}
        video_path = payload.get("video_path")
        if not video_path:
            raise ServiceError("MediaTransform compose returned no video_path")
        return str(video_path)


def build_media_gateway(settings: Settings) -> HttpMediaTransformClient:
    return HttpMediaTransformClient(
        settings.media_service_url,
        poll_interval=settings.media_poll_interval,
        timeout=settings.service_timeout,
        cb_threshold=settings.service_cb_threshold,
        cb_cooldown=float(settings.service_cb_cooldown),
    )
