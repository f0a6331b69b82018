"""Async coordination primitives for job dispatch and cancellation."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class CancellationToken:
    """One-shot cancellation signal carrying the reason it was raised with.

    The first ``cancel`` call wins; the governor reports that reason when it
    kills the job's process group.
    """

    __slots__ = ("_fired", "_reason")

    def __init__(self) -> None:
        self._fired = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._fired.is_set():
            self._reason = reason
            self._fired.set()

    @property
    def is_cancelled(self) -> bool:
        return self._fired.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._fired.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "cancelled")


class BoundedSemaphore:
    """FIFO permit pool that reports how many jobs hold or await a slot.

    A released permit is handed straight to the oldest waiter, so a burst of
    new arrivals cannot overtake jobs that were queued first.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        self._limit = limit
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._in_use < self._limit and not self.waiting:
            self._in_use += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # A permit handed over just before cancellation moves on to the next waiter.
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called without a held permit")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_use -= 1

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
            "waiting": self.waiting,
        }


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
]
