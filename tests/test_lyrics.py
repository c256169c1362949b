"""Tests for lyric timing and LRC/SRT rendering."""
from __future__ import annotations

from pathlib import Path

import pytest

from karaokio.contracts.song_types import LyricLine
from karaokio.services.lyrics import LRC_FILENAME, distribute_lines, to_lrc, to_srt, write_lrc


class TestDistributeLines:
    def test_even_split_skips_blank_lines(self) -> None:

        lines = distribute_lines("First line\n\n  Second line  \n", 1000)
        assert lines == [
            LyricLine(0, 500, "First line"),
            LyricLine(500, 1000, "Second line"),
        ]

    def test_nothing_to_distribute(self) -> None:

        assert distribute_lines("   \n", 1000) == []
        assert distribute_lines("words", 0) == []


class TestRendering:
    def test_lrc(self) -> None:

        lines = [LyricLine(0, 1500, "Hello"), LyricLine(61_234, 65_000, "World")]
        assert to_lrc(lines) == "[00:00.00]Hello\n[01:01.23]World"

    def test_srt(self) -> None:

        lines = [LyricLine(1500, 3000, "Hello"), LyricLine(3_723_004, 3_725_000, "Late")]
        assert to_srt(lines) == (
            "1\n00:00:01,500 --> 00:00:03,000\nHello\n"
            "\n"
            "2\n01:02:03,004 --> 01:02:05,000\nLate\n"
        )

    @pytest.mark.asyncio
    async def test_write_lrc(self, tmp_path) -> None:

        path = await write_lrc([LyricLine(0, 1000, "Hi")], tmp_path / "stems")
        assert Path(path) == tmp_path / "stems" / LRC_FILENAME
        assert Path(path).read_text(encoding="utf-8") == "[00:00.00]Hi"
