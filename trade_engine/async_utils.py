"""
Async Utilities - per-key mutual exclusion and bounded waits.

Usage:
    from trade_engine.async_utils import KeyedLock, with_timeout

    locks = KeyedLock()

    async with locks.hold(("agent-1", mint)):
        ...  # one mutation at a time for this key

    quote = await with_timeout(client.quote(...), 10.0, "quote")
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Hashable, List, TypeVar

T = TypeVar('T')


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand.

    Different keys never block each other. Locks are dropped once no task
    holds or waits on them, so the table does not grow with every key ever
    seen.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refcounts: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str = "operation") -> T:
    """Await with a deadline; re-raises asyncio.TimeoutError naming the operation."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(f"{operation} timed out after {seconds}s")


async def gather_tolerant(*aws: Awaitable[Any]) -> List[Any]:
    """Gather results, returning exceptions in place instead of failing the batch."""
    return await asyncio.gather(*aws, return_exceptions=True)
