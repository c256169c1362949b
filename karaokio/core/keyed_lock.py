"""Per-key asyncio locks.

Serializes operations that touch the same song id or cache fingerprint
while letting unrelated keys proceed concurrently.  Locks are created on
first use and dropped once no coroutine holds or awaits them.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """In-memory map of key -> asyncio.Lock with reference counting."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def snapshot(self) -> dict[str, int]:
        """Return a point-in-time copy of holder/waiter counts (for debug endpoints)."""
        return dict(self._waiters)
