"""
Cooperative async mutex used by every cache backend.

Each store instance owns exactly one :class:`AsyncMutex`; instances never share
one, even when they point at the same physical storage.  Waiters are served in
FIFO order (``asyncio.Lock`` keeps a FIFO waiter queue), and the lock is always
released on exit from ``async with mutex.lock():``, including when the body
raises.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class AsyncMutex:
    """Async mutual-exclusion lock with an explicit acquire/release pair.

    Usage::

        mutex = AsyncMutex()
        async with mutex.lock():
            ...  # critical section
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        await self._lock.acquire()

    def release(self) -> None:
        self._lock.release()

    @property
    def locked(self) -> bool:
        """True while some caller holds the lock."""
        return self._lock.locked()

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[None]:
        """Hold the mutex for the duration of the ``async with`` block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
