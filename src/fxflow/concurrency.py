from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING

from .utils import ensure_callable, run_step

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Running count plus FIFO wait queue bounding in-flight invocations.

    ``running`` never exceeds ``limit``. A slot released by a finished call is
    handed directly to the oldest waiter.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got: {limit}")
        self.limit = limit
        self.running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self.running < self.limit and not self._waiters:
            self.running += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot ownership transfers to the waiter; running is unchanged.
                waiter.set_result(None)
                return
        self.running -= 1


def concurrency(step: Step, limit: int) -> Step:
    """Bound how many invocations of ``step`` run at once.

    The queue is shared by every call of the returned step. A failing call
    raises its own error and the queue keeps draining.
    """
    ensure_callable(step, "Limited step")
    limiter = ConcurrencyLimiter(limit)

    async def _limited(state: State, ledger: Ledger) -> State:
        await limiter.acquire()
        try:
            return await run_step(step, state, ledger)
        finally:
            limiter.release()

    _limited.limiter = limiter  # type: ignore[attr-defined]
    return _limited
