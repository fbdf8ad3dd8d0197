from __future__ import annotations

import asyncio
import hashlib
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def advisory_key(key: str) -> int:
    """Stable signed 64-bit key for pg advisory locks."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Transaction-scoped lock on PostgreSQL; no-op on other dialects."""
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": advisory_key(key)})


class KeyedLocks:
    """Per-key asyncio locks (one per wallet address / user id).

    Several keys are always taken in sorted order so two requests touching
    the same pair of wallets cannot deadlock each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        left = self._users.get(key, 1) - 1
        if left <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._users[key] = left

    @asynccontextmanager
    async def _hold_one(self, key: str) -> AsyncIterator[None]:
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._hold_one(key))
            yield

    def users(self, key: str) -> int:
        """Holders plus waiters on key."""
        return self._users.get(key, 0)

    def __len__(self) -> int:
        return len(self._locks)
