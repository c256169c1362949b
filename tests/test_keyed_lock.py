"""Tests for per-key asyncio locks."""
from __future__ import annotations

import asyncio

import pytest

from karaokio.core.keyed_lock import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:

        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("song-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self) -> None:

        locks = KeyedLock()
        inside = asyncio.Event()

        async with locks.hold("song-1"):
            async with locks.hold("song-2"):
                inside.set()
        assert inside.is_set()

    @pytest.mark.asyncio
    async def test_lock_dropped_after_release(self) -> None:

        """Idle keys do not accumulate."""
        locks = KeyedLock()
        async with locks.hold("song-1"):
            assert locks.locked("song-1")
            assert locks.snapshot() == {"song-1": 1}
        assert not locks.locked("song-1")
        assert locks.snapshot() == {}

    @pytest.mark.asyncio
    async def test_released_on_exception(self) -> None:

        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("song-1"):
                raise RuntimeError("boom")
        assert locks.snapshot() == {}
