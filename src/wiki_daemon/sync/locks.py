"""Per-path serialisation of sync operations."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class PathLocks:
    """Hand out one ``asyncio.Lock`` per key.

    Operations on the same key run one after another in arrival order;
    operations on different keys never wait on each other.  Locks are
    dropped once no holder or waiter references them, so the table does
    not grow with the number of paths ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_busy(self, key: str) -> bool:
        """True while an operation on *key* is running or queued."""
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
