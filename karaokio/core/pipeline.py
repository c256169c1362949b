"""Pipeline building blocks: deadlines, stage progress and compose strategies.

``run_with_deadline`` abandons rather than blocks: when the deadline passes
the wrapped call is cancelled and the caller moves on immediately, whether
or not the collaborator honours the cancellation.  Anything the abandoned
call produces later is dropped or handed to a cleanup callback.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional, TypeVar

from karaokio.contracts.song_types import SongStatus, Stage
from karaokio.errors import StageTimeout
from karaokio.services.gateways.base import BaseVideo

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _discard_result(
    task: asyncio.Future[Any],
    on_late_result: Optional[Callable[[Any], None]] = None,
) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned call finished late with {type(exc).__name__}: {exc}")
        return
    if on_late_result is not None:
        on_late_result(task.result())


async def run_with_deadline(
    call: Awaitable[T],
    seconds: Optional[float],
    stage: str,
    on_late_result: Optional[Callable[[T], None]] = None,
) -> T:
    """Await ``call`` for at most ``seconds``; raise ``StageTimeout`` after that.

    ``seconds=None`` waits without limit.  Cancelling the caller cancels
    the call too.  If an abandoned call still produces a value, it is
    handed to ``on_late_result`` (to release files it created) and
    otherwise dropped.
    """
    task = asyncio.ensure_future(call)
    abandon = partial(_discard_result, on_late_result=on_late_result)
    try:
        done, _ = await asyncio.wait({task}, timeout=seconds)
    except asyncio.CancelledError:
        task.cancel()
        task.add_done_callback(abandon)
        raise
    if not done:
        task.cancel()
        task.add_done_callback(abandon)
        raise StageTimeout(stage, seconds or 0.0)
    return task.result()


@dataclass(frozen=True)
class StageRange:
    start: int
    end: int

    def at(self, fraction: float) -> int:
        fraction = max(0.0, min(fraction, 1.0))
        return self.start + int(round((self.end - self.start) * fraction))


def stage_ranges(progress: Mapping[str, tuple[int, int]]) -> dict[Stage, StageRange]:
    return {stage: StageRange(*progress[stage.value]) for stage in Stage}


# Signature of StatusStore.record_progress
ProgressWriter = Callable[[str, int, SongStatus, int], Awaitable[bool]]


class ProgressReporter:
    """Maps a collaborator's 0..1 progress into a stage's sub-range.

    Instances are callable from any thread; the write is scheduled onto the
    event loop that created the reporter.  Values that do not raise the
    reported progress are dropped, and once ``close()`` is called (stage
    finished, run cancelled or abandoned) every later report is ignored.
    """

    def __init__(
        self,
        write: ProgressWriter,
        song_id: str,
        generation: int,
        stage: Stage,
        span: StageRange,
        is_live: Callable[[], bool] = lambda: True,
    ):
        self._write = write
        self._song_id = song_id
        self._generation = generation
        self._stage = stage
        self._span = span
        self._is_live = is_live
        self._loop = asyncio.get_running_loop()
        self._last = span.start
        self._closed = False
        self._pending: set[asyncio.Task[bool]] = set()

    def __call__(self, fraction: float) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._schedule, fraction)
        except RuntimeError:
            # Loop already closed; the run is long gone.
            pass

    def _schedule(self, fraction: float) -> None:
        if self._closed or not self._is_live():
            return
        value = self._span.at(fraction)
        if value <= self._last:
            return
        self._last = value
        task = asyncio.ensure_future(
            self._write(self._song_id, self._generation, self._stage.status, value)
        )
        self._pending.add(task)
        task.add_done_callback(self._on_written)

    def _on_written(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"⚠️ Progress write for {self._song_id[:8]} failed: {exc}")

    async def close(self) -> None:
        """Stop accepting reports and wait for writes already in flight."""
        await asyncio.sleep(0)
        self._closed = True
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@dataclass(frozen=True)
class ComposeStrategy:
    """One way of producing the final video, tried in list order."""
    name: str
    output_name: str
    uses_base_video: bool

    def applies(self, base_video: Optional[BaseVideo]) -> bool:
        return base_video is not None or not self.uses_base_video


COMPOSE_STRATEGIES: tuple[ComposeStrategy, ...] = (
    ComposeStrategy("audio_replacement", "final_karaoke.mp4", uses_base_video=True),
    ComposeStrategy("generative", "generated_karaoke.mp4", uses_base_video=False),
)


def select_compose_strategy(
    base_video: Optional[BaseVideo],
    strategies: tuple[ComposeStrategy, ...] = COMPOSE_STRATEGIES,
) -> ComposeStrategy:
    """First strategy whose precondition holds."""
    for strategy in strategies:
        if strategy.applies(base_video):
            return strategy
    raise LookupError("No compose strategy applies")
