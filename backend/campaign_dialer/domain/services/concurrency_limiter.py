"""
Concurrency Limiter
Bounded-parallelism gate with FIFO admission
"""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Admits at most `max_concurrent` operations at once.

    Excess submissions wait in FIFO order. A finishing operation hands its
    slot directly to the oldest waiter, so a newcomer can never overtake a
    queued submission.
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._active = 0
        self._peak = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active(self) -> int:
        """Operations currently executing their body"""
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def peak(self) -> int:
        """Highest number of simultaneously running operations seen"""
        return self._peak

    async def submit(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run `operation(*args, **kwargs)` once a slot is free.

        The slot is released when the operation finishes, whether it
        returns or raises; its exception propagates to the caller.
        """
        await self._acquire()
        try:
            return await operation(*args, **kwargs)
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self._max_concurrent and not self._waiters:
            self._take_slot()
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; pass it on
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _take_slot(self) -> None:
        self._active += 1
        if self._active > self._peak:
            self._peak = self._active

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over; the active count stays the same
                waiter.set_result(None)
                return
        self._active -= 1

    def get_stats(self) -> dict:
        return {
            "max_concurrent": self._max_concurrent,
            "active": self._active,
            "waiting": self.waiting,
            "peak": self._peak,
        }
