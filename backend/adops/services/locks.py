"""
Keyed asyncio locks.

tier_locks serialize runs of the same (account, tier) pair; a run that
finds its key held is skipped. account_locks serialize everything that
writes keyword state for one account: keyword-touching syncs, the keyword
engine and rollback.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: defaultdict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, key: Hashable) -> asyncio.Lock:
        return self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield

    @asynccontextmanager
    async def try_hold(self, key: Hashable) -> AsyncIterator[bool]:
        """
        Acquire the lock only if it is free. Yields False (without waiting)
        when another holder has it.
        """
        lock = self._locks[key]
        if lock.locked():
            yield False
            return
        async with lock:
            yield True


tier_locks = KeyedLocks()
account_locks = KeyedLocks()
