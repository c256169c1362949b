"""Karaokio operator CLI: Typer application root.

Entry point for the ``karaokio`` console script.  Commands read and
maintain the same database the API server uses; they never start the
job pipeline.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import typer

from karaokio.api.models import CacheStatsResponse, SongResponse
from karaokio.config import settings
from karaokio.db import close_db, get_session_factory, init_db
from karaokio.errors import NotFound
from karaokio.services.cache_index import CacheIndex
from karaokio.services.status_store import StatusStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0: success
    1: user error (bad arguments, unknown song)
    3: internal error
    """

    SUCCESS = 0
    USER_ERROR = 1
    INTERNAL_ERROR = 3


cli = typer.Typer(
    name="karaokio",
    help="Karaokio: inspect the song queue and maintain the artifact cache.",
    no_args_is_help=True,
)

_DB_OPTION = typer.Option(None, "--database-url", help="Override KARAOKIO_DATABASE_URL.")


def _run(command: str, database_url: Optional[str], work: Callable[[StatusStore, CacheIndex], Awaitable[T]]) -> T:
    async def _go() -> T:
        await init_db(database_url)
        try:
            factory = get_session_factory()
            return await work(StatusStore(factory), CacheIndex(factory))
        finally:
            await close_db()

    try:
        return asyncio.run(_go())
    except NotFound as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=ExitCode.USER_ERROR)
    except Exception as exc:
        typer.echo(f"karaokio {command} failed: {exc}", err=True)
        logger.error("karaokio %s error: %s", command, exc, exc_info=True)
        raise typer.Exit(code=ExitCode.INTERNAL_ERROR)


def _fmt_size(size: int) -> str:
    return f"{size / 1024 / 1024:.1f}MB"


@cli.command("queue", help="List every song that is not completed, oldest request first.")
def queue_cmd(
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
    database_url: Optional[str] = _DB_OPTION,
) -> None:
    async def _work(store: StatusStore, cache: CacheIndex) -> list[SongResponse]:
        return [SongResponse.from_song(s) for s in await store.active_queue()]

    songs = _run("queue", database_url, _work)
    if as_json:
        typer.echo(json.dumps([s.model_dump(mode="json", by_alias=True) for s in songs], indent=2))
        return
    if not songs:
        typer.echo("Queue is empty.")
        return
    for song in songs:
        singer = song.user.name if song.user else "?"
        typer.echo(
            f"{song.id[:8]}  {song.status:<10} {song.progress:>3}%  "
            f"{song.artist} - {song.title}  ({singer})"
        )


@cli.command("status", help="Show status, progress and artifacts of one song.")
def status_cmd(
    song_id: str = typer.Argument(..., help="Song id."),
    database_url: Optional[str] = _DB_OPTION,
) -> None:
    async def _work(store: StatusStore, cache: CacheIndex) -> SongResponse:
        return SongResponse.from_song(await store.get_song(song_id))

    song = _run("status", database_url, _work)
    typer.echo(f"{song.artist} - {song.title}")
    typer.echo(f"  status:   {song.status}")
    typer.echo(f"  progress: {song.progress}%")
    if song.error:
        typer.echo(f"  error:    {song.error}")
    for name, path in song.artifacts.model_dump().items():
        if path:
            typer.echo(f"  {name}: {path}")


@cli.command("cache-stats", help="Show cache entry count, total size and age range.")
def cache_stats_cmd(
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
    database_url: Optional[str] = _DB_OPTION,
) -> None:
    async def _work(store: StatusStore, cache: CacheIndex) -> CacheStatsResponse:
        stats = await cache.stats()
        return CacheStatsResponse(**stats.__dict__)

    stats = _run("cache-stats", database_url, _work)
    if as_json:
        typer.echo(stats.model_dump_json(by_alias=True))
        return
    typer.echo(f"entries: {stats.count}")
    typer.echo(f"size:    {_fmt_size(stats.total_size)}")
    if stats.oldest and stats.newest:
        typer.echo(f"oldest:  {stats.oldest.isoformat()}")
        typer.echo(f"newest:  {stats.newest.isoformat()}")


@cli.command("cache-evict", help="Evict idle and excess cache entries and delete their files.")
def cache_evict_cmd(
    max_age_days: int = typer.Option(
        settings.cache_max_age_days, "--max-age-days", min=0, help="Evict entries idle longer than this."
    ),
    max_entries: int = typer.Option(
        settings.cache_max_entries, "--max-entries", min=0, help="Keep at most this many entries."
    ),
    database_url: Optional[str] = _DB_OPTION,
) -> None:
    async def _work(store: StatusStore, cache: CacheIndex) -> tuple[int, int, int]:
        report = await cache.evict(max_age_days, max_entries)
        return len(report.removed), len(report.skipped), report.files_deleted

    removed, skipped, files = _run("cache-evict", database_url, _work)
    typer.echo(f"Evicted {removed} entries ({files} files deleted, {skipped} skipped as in use).")


if __name__ == "__main__":
    cli()
