"""Lyric timing helpers: even-split fallback timing plus LRC/SRT rendering."""
from __future__ import annotations

import asyncio
from pathlib import Path

from karaokio.contracts.song_types import LyricLine

LRC_FILENAME = "lyrics.lrc"


def distribute_lines(text: str, duration_ms: int) -> list[LyricLine]:
    """Spread the non-blank lines of ``text`` evenly across ``duration_ms``."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or duration_ms <= 0:
        return []
    per_line = duration_ms / len(lines)
    return [
        LyricLine(
            start_ms=round(i * per_line),
            end_ms=round((i + 1) * per_line),
            text=line,
        )
        for i, line in enumerate(lines)
    ]


def _lrc_timestamp(ms: int) -> str:
    minutes, rem = divmod(ms, 60_000)
    seconds, rem = divmod(rem, 1000)
    return f"[{minutes:02d}:{seconds:02d}.{rem // 10:02d}]"


def _srt_timestamp(ms: int) -> str:
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def to_lrc(lines: list[LyricLine]) -> str:
    return "\n".join(f"{_lrc_timestamp(line.start_ms)}{line.text}" for line in lines)


def to_srt(lines: list[LyricLine]) -> str:
    return "\n".join(
        f"{i}\n{_srt_timestamp(line.start_ms)} --> {_srt_timestamp(line.end_ms)}\n{line.text}\n"
        for i, line in enumerate(lines, start=1)
    )


async def write_lrc(lines: list[LyricLine], directory: str | Path) -> str:
    """Write ``lyrics.lrc`` into ``directory`` and return its path."""
    path = Path(directory) / LRC_FILENAME
    content = to_lrc(lines)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    await asyncio.to_thread(_write)
    return str(path)
