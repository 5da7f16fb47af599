"""
locks.py — per-session turn serialisation.

A turn holds its session's lock from history read to commit, so overlapping
sends on one session are applied in arrival order. Locks are refcounted and
dropped when nobody holds or waits on them; different sessions never contend.
"""
import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class SessionLockRegistry:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if self._users[session_id] == 0:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)
