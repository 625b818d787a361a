"""
Per-key asyncio locks.

Serialises work on one key (a user's day ledger, a user's device binding)
while unrelated keys proceed in parallel. Locks are dropped once no
coroutine holds or waits on them, so the registry does not grow without
bound.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def ledger_key(user_id: str, day: str) -> str:
    return f"ledger:{user_id}:{day}"


def device_key(user_id: str) -> str:
    return f"device:{user_id}"
