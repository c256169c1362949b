"""Tests for the acquisition adapters: scoring, uploads, catalog and karaoke videos."""
from __future__ import annotations

import re
from pathlib import Path

import httpx
import pytest

from karaokio.config import Settings
from karaokio.services.gateways.acquisition import (
    MIN_VIDEO_SCORE,
    CatalogSource,
    KaraokeVideoSource,
    UploadsSource,
    build_acquisition_gateway,
    is_karaoke_candidate,
    safe_filename,
    score_karaoke_video,
)
from karaokio.services.gateways.base import (
    AcquisitionCandidate,
    AcquisitionConstraints,
    AcquisitionSource,
)
from karaokio.services.gateways.http_client import ServiceError

TITLE = "Bohemian Rhapsody"
ARTIST = "Queen"


def _constraints(**kwargs) -> AcquisitionConstraints:
    return AcquisitionConstraints(quality="balanced", **kwargs)


class TestScoring:
    def test_official_karaoke_scores_highest(self) -> None:

        score = score_karaoke_video(
            "Queen - Bohemian Rhapsody (Official Karaoke Instrumental) HD", TITLE, ARTIST
        )
        assert score == 1.0

    def test_live_cover_scores_low(self) -> None:

        score = score_karaoke_video("Bohemian Rhapsody live cover", TITLE, ARTIST)
        assert score < MIN_VIDEO_SCORE

    def test_candidate_needs_song_and_karaoke_term(self) -> None:

        assert is_karaoke_candidate("Queen Bohemian Rhapsody Karaoke", TITLE, ARTIST)
        assert not is_karaoke_candidate("Queen Bohemian Rhapsody live", TITLE, ARTIST)
        assert not is_karaoke_candidate("Some other song karaoke", TITLE, ARTIST)

    def test_safe_filename(self) -> None:

        name = safe_filename("AC/DC - T.N.T.")
        assert re.fullmatch(r"AC_DC___T_N_T__[0-9a-f]{8}", name)
        assert safe_filename("a/b") != safe_filename("a_b")


class TestUploadsSource:
    @pytest.mark.asyncio
    async def test_exact_filename_match(self, tmp_path) -> None:

        (tmp_path / f"{ARTIST} - {TITLE}.mp3").write_bytes(b"audio")
        source = UploadsSource(tmp_path)
        progress: list[float] = []

        candidate = await source.find(TITLE, ARTIST, _constraints())
        assert candidate is not None
        path = await source.fetch(candidate, progress.append, 10.0)

        assert Path(path).name == f"{ARTIST} - {TITLE}.mp3"
        assert progress == [1.0]

    @pytest.mark.asyncio
    async def test_fuzzy_match(self, tmp_path) -> None:

        (tmp_path / "01 queen bohemian rhapsody remaster.flac").write_bytes(b"audio")
        (tmp_path / "notes.txt").write_text("queen bohemian rhapsody")

        candidate = await UploadsSource(tmp_path).find(TITLE, ARTIST, _constraints())

        assert candidate is not None
        assert candidate.locator.endswith(".flac")

    @pytest.mark.asyncio
    async def test_nothing_found(self, tmp_path) -> None:

        assert await UploadsSource(tmp_path / "missing").find(TITLE, ARTIST, _constraints()) is None
        assert await UploadsSource(tmp_path).find(TITLE, ARTIST, _constraints()) is None

    @pytest.mark.asyncio
    async def test_fetch_vanished_file(self, tmp_path) -> None:

        path = tmp_path / f"{TITLE}.mp3"
        path.write_bytes(b"audio")
        source = UploadsSource(tmp_path)
        candidate = await source.find(TITLE, ARTIST, _constraints())
        path.unlink()

        with pytest.raises(FileNotFoundError):
            await source.fetch(candidate, lambda _: None, 10.0)

    def test_satisfies_source_protocol(self, tmp_path) -> None:
        assert isinstance(UploadsSource(tmp_path), AcquisitionSource)


class TestCatalogSource:
    @pytest.mark.asyncio
    async def test_picks_best_seeded_match_and_downloads(self, tmp_path) -> None:

        """Under-seeded and unrelated results are skipped; the file is streamed to disk."""
        payload = b"ID3" + b"\x00" * 2000
        searches: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/search":
                searches.append(request.url.params["q"])
                return httpx.Response(200, json={"results": [
                    {"title": "Queen - Bohemian Rhapsody", "seeders": 2, "url": "http://catalog/f/1.mp3"},
                    {"title": "Queen - Bohemian Rhapsody [FLAC]", "seeders": 10, "url": "http://catalog/f/2.flac"},
                    {"title": "Unrelated Song", "seeders": 99, "url": "http://catalog/f/3.mp3"},
                ]})
            if request.url.path == "/f/2.flac":
                return httpx.Response(200, content=payload)
            return httpx.Response(404)

        source = CatalogSource(
            "http://catalog", tmp_path / "downloads", transport=httpx.MockTransport(handler)
        )
        progress: list[float] = []
        try:
            candidate = await source.find(TITLE, ARTIST, _constraints(min_seeders=3))
            assert candidate is not None
            assert candidate.locator == "http://catalog/f/2.flac"
            assert candidate.score == 10.0
            path = await source.fetch(candidate, progress.append, 10.0)
        finally:
            await source.close()

        assert searches == [f"{ARTIST} {TITLE}"]
        assert Path(path).suffix == ".flac"
        assert Path(path).parent == tmp_path / "downloads"
        assert Path(path).read_bytes() == payload
        assert progress[-1] == 1.0
        assert not list((tmp_path / "downloads").glob("*.part"))

    @pytest.mark.asyncio
    async def test_server_errors_open_breaker_and_return_none(self, tmp_path) -> None:

        """Failing searches are tolerated; repeated 5xx responses trip the breaker."""
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(503, text="maintenance")

        source = CatalogSource(
            "http://catalog", tmp_path, cb_threshold=3, transport=httpx.MockTransport(handler)
        )
        try:
            assert await source.find(TITLE, ARTIST, _constraints()) is None
        finally:
            await source.close()

        assert len(calls) == 3
        assert source.circuit_breaker_open

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_partial_file(self, tmp_path) -> None:

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        source = CatalogSource("http://catalog", tmp_path, transport=httpx.MockTransport(handler))
        candidate = AcquisitionCandidate(source="catalog", locator="http://catalog/f/1.mp3", label="x")
        try:
            with pytest.raises(ServiceError):
                await source.fetch(candidate, lambda _: None, 10.0)
        finally:
            await source.close()
        assert list(tmp_path.iterdir()) == []


class TestKaraokeVideoSource:
    @pytest.mark.asyncio
    async def test_downloads_best_karaoke_video(self, tmp_path) -> None:

        """Long, non-karaoke and low-scoring videos are filtered out."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/videos/search":
                return httpx.Response(200, json={"videos": [
                    {"id": "long", "title": "Queen Bohemian Rhapsody karaoke 1 hour", "duration": 3600},
                    {"id": "live", "title": "Queen Bohemian Rhapsody live", "duration": 360},
                    {"id": "good", "title": "Queen - Bohemian Rhapsody (Karaoke Version)", "duration": 360},
                ]})
            if request.url.path == "/videos/good/download":
                return httpx.Response(200, content=b"mp4 bytes")
            return httpx.Response(404)

        source = KaraokeVideoSource(
            "http://videos", tmp_path / "videos", transport=httpx.MockTransport(handler)
        )
        try:
            ranked = await source.search_karaoke_videos(TITLE, ARTIST, _constraints())
            video = await source.find_base_video(TITLE, ARTIST, _constraints())
        finally:
            await source.close()

        assert [v["id"] for _, v in ranked] == ["good"]
        assert video is not None
        assert video.video_id == "good"
        assert video.path.endswith("_good.mp4")
        assert Path(video.path).read_bytes() == b"mp4 bytes"

    @pytest.mark.asyncio
    async def test_nothing_found(self, tmp_path) -> None:

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"videos": []})

        source = KaraokeVideoSource("http://videos", tmp_path, transport=httpx.MockTransport(handler))
        try:
            assert await source.find_base_video(TITLE, ARTIST, _constraints()) is None
        finally:
            await source.close()


class TestBuildGateway:
    def test_catalog_without_url_is_skipped(self, tmp_path) -> None:

        settings = Settings(_env_file=None, upload_dir=tmp_path, catalog_service_url=None)
        gateway = build_acquisition_gateway(settings)
        assert gateway.source_names == ["uploads"]
        assert gateway.video_source is None

    def test_ranked_order_follows_configuration(self, tmp_path) -> None:

        settings = Settings(
            _env_file=None,
            acquisition_sources=["uploads", "catalog"],
            catalog_service_url="http://catalog",
            video_service_url="http://videos",
        )
        gateway = build_acquisition_gateway(settings)
        assert gateway.source_names == ["uploads", "catalog"]
        assert isinstance(gateway.video_source, KaraokeVideoSource)

    def test_unknown_source(self) -> None:

        with pytest.raises(ValueError, match="Unknown acquisition source"):
            build_acquisition_gateway(Settings(_env_file=None, acquisition_sources=["torrent-x"]))
