"""Tests for deadlines, progress reporting and compose strategy selection."""
from __future__ import annotations

import asyncio

import pytest

from karaokio.config import DEFAULT_STAGE_PROGRESS
from karaokio.contracts.song_types import SongStatus, Stage
from karaokio.core.pipeline import (
    COMPOSE_STRATEGIES,
    ProgressReporter,
    StageRange,
    run_with_deadline,
    select_compose_strategy,
    stage_ranges,
)
from karaokio.errors import StageTimeout
from karaokio.services.gateways.base import BaseVideo


class _Writes:
    """Records what a ProgressReporter writes."""

    def __init__(self) -> None:
        self.values: list[tuple[str, int, SongStatus, int]] = []

    async def __call__(self, song_id: str, generation: int, status: SongStatus, progress: int) -> bool:
        self.values.append((song_id, generation, status, progress))
        return True


class TestRunWithDeadline:
    @pytest.mark.asyncio
    async def test_returns_result_in_time(self) -> None:

        async def quick() -> str:
            return "done"

        assert await run_with_deadline(quick(), 1.0, "quick") == "done"

    @pytest.mark.asyncio
    async def test_propagates_errors(self) -> None:

        async def broken() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await run_with_deadline(broken(), 1.0, "broken")

    @pytest.mark.asyncio
    async def test_abandons_call_that_ignores_cancellation(self) -> None:

        """The caller moves on at the deadline even if the call keeps running."""
        finished = asyncio.Event()

        async def stubborn() -> str:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                await asyncio.sleep(0.2)
                finished.set()
                return "late"
            return "never"

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(StageTimeout) as exc:
            await run_with_deadline(stubborn(), 0.05, "separate")

        assert loop.time() - started < 0.2
        assert exc.value.stage == "separate"
        assert str(exc.value) == "separate timed out after 0.05s"
        assert not finished.is_set()
        await asyncio.wait_for(finished.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_late_result_goes_to_cleanup_callback(self) -> None:

        """A value produced after the deadline is handed over, never returned."""
        late: list[str] = []

        async def stubborn() -> str:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                return "/tmp/late.mp4"
            return "never"

        with pytest.raises(StageTimeout):
            await run_with_deadline(stubborn(), 0.05, "compose", on_late_result=late.append)

        for _ in range(20):
            if late:
                break
            await asyncio.sleep(0.01)
        assert late == ["/tmp/late.mp4"]

    @pytest.mark.asyncio
    async def test_outer_cancel_cancels_call(self) -> None:

        cancelled = asyncio.Event()

        async def slow() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        outer = asyncio.create_task(run_with_deadline(slow(), 5.0, "slow"))
        await asyncio.sleep(0.01)
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
        await asyncio.wait_for(cancelled.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_no_deadline(self) -> None:

        async def quick() -> int:
            await asyncio.sleep(0)
            return 7

        assert await run_with_deadline(quick(), None, "unbounded") == 7


class TestStageRanges:
    def test_at_maps_fraction_into_range(self) -> None:

        span = StageRange(30, 70)
        assert span.at(0.0) == 30
        assert span.at(0.5) == 50
        assert span.at(1.0) == 70
        assert span.at(1.7) == 70
        assert span.at(-1.0) == 30

    def test_ranges_follow_pipeline_order(self) -> None:

        ranges = stage_ranges(DEFAULT_STAGE_PROGRESS)
        assert list(ranges) == list(Stage)
        assert ranges[Stage.ACQUIRE] == StageRange(5, 30)
        assert ranges[Stage.COMPOSE].end == 100


class TestProgressReporter:
    @pytest.mark.asyncio
    async def test_only_raises_progress(self) -> None:

        """Reports that would lower progress are dropped."""
        writes = _Writes()
        reporter = ProgressReporter(writes, "song", 3, Stage.SEPARATE, StageRange(30, 70))

        reporter(0.5)
        reporter(0.25)
        reporter(0.75)
        await reporter.close()

        assert [v[3] for v in writes.values] == [50, 60]
        assert writes.values[0][:3] == ("song", 3, SongStatus.SEPARATING)

    @pytest.mark.asyncio
    async def test_callable_from_worker_thread(self) -> None:

        writes = _Writes()
        reporter = ProgressReporter(writes, "song", 1, Stage.ACQUIRE, StageRange(5, 30))

        await asyncio.to_thread(reporter, 1.0)
        await reporter.close()

        assert [v[3] for v in writes.values] == [30]

    @pytest.mark.asyncio
    async def test_ignored_after_close(self) -> None:

        writes = _Writes()
        reporter = ProgressReporter(writes, "song", 1, Stage.COMPOSE, StageRange(85, 100))
        await reporter.close()

        reporter(0.5)
        await asyncio.sleep(0.01)

        assert writes.values == []

    @pytest.mark.asyncio
    async def test_ignored_when_run_not_live(self) -> None:

        writes = _Writes()
        reporter = ProgressReporter(
            writes, "song", 1, Stage.COMPOSE, StageRange(85, 100), is_live=lambda: False
        )

        reporter(0.5)
        await reporter.close()

        assert writes.values == []


class TestComposeStrategy:
    def test_base_video_selects_audio_replacement(self) -> None:

        strategy = select_compose_strategy(BaseVideo(path="/tmp/base.mp4", video_id="abc"))
        assert strategy.name == "audio_replacement"
        assert strategy.output_name == "final_karaoke.mp4"

    def test_no_base_video_selects_generative(self) -> None:

        strategy = select_compose_strategy(None)
        assert strategy.name == "generative"
        assert not strategy.uses_base_video

    def test_order_is_data(self) -> None:

        """Reordering the list changes the choice."""
        reversed_order = tuple(reversed(COMPOSE_STRATEGIES))
        strategy = select_compose_strategy(BaseVideo(path="/tmp/base.mp4"), reversed_order)
        assert strategy.name == "generative"

    def test_no_applicable_strategy(self) -> None:

        only_replacement = COMPOSE_STRATEGIES[:1]
        with pytest.raises(LookupError):
            select_compose_strategy(None, only_replacement)
