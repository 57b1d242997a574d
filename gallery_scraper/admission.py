from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Bounded-permit gate with FIFO hand-off and live resize.

    release() passes its permit straight to the longest-waiting caller instead
    of returning it to the pool, so a late arrival can never jump the queue.
    Shrinking the ceiling never evicts holders; new admissions stop until
    usage drains below the new ceiling.
    """

    def __init__(self, permits: int, *, name: str = "admission") -> None:
        self._name = name
        self._max = max(1, int(permits))
        self._in_use = 0
        self._waiters: Deque[asyncio.Future] = deque()

    # ---------------- Introspection ----------------

    @property
    def max_permits(self) -> int:
        return self._max

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return max(0, self._max - self._in_use)

    @property
    def waiting(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    def snapshot(self) -> Dict[str, int]:
        return {
            "max": self._max,
            "in_use": self._in_use,
            "available": self.available,
            "waiting": self.waiting,
        }

    # ---------------- Acquire / release ----------------

    async def acquire(self) -> None:
        if self._in_use < self._max and not self._waiters:
            self._in_use += 1
            return

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # permit was handed over just before cancellation; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self._in_use <= 0:
            logger.warning("[%s] release() without matching acquire()", self._name)
            return
        self._in_use -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._in_use < self._max:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._in_use += 1
            fut.set_result(None)

    def resize(self, permits: int) -> None:
        n = max(1, int(permits))
        if n == self._max:
            return
        old = self._max
        self._max = n
        logger.info("[%s] resized %d -> %d (in_use=%d waiting=%d)", self._name, old, n, self._in_use, self.waiting)
        self._wake()

    async def __aenter__(self) -> "AdmissionController":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
