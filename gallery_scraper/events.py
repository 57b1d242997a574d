from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .utils import now_iso

logger = logging.getLogger(__name__)

# Event types published by the orchestrator
STATE_CHANGE = "state-change"
BATCH_START = "batch-start"
BATCH_COMPLETE = "batch-complete"
TEMPLATE_PHASE = "template-phase"
PROGRESS = "progress"
PAUSED = "paused"
TIMEOUT_PAUSED = "timeout-paused"
ERROR = "error"

Handler = Callable[["Event"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Event:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=now_iso)


class Subscription:
    """One subscriber: a bounded queue and the task that feeds its handler."""

    def __init__(self, handler: Handler, *, maxsize: int) -> None:
        self.handler = handler
        self.queue: asyncio.Queue[Optional[Event]] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self.dropped = 0
        self._task: asyncio.Task[None] = asyncio.get_running_loop().create_task(
            self._run(), name="event-subscriber"
        )

    def offer(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # slow subscriber: drop its oldest event
            try:
                self.queue.get_nowait()
                self.queue.task_done()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self.queue.put_nowait(event)

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if event is None:
                    return
                res = self.handler(event)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                logger.warning("[events] subscriber failed on %s: %s", event.type if event else None, e)
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        if self._task.done():
            return
        self.offer(None)  # type: ignore[arg-type]
        await self._task


class EventBus:
    """
    Fan-out of orchestrator events. emit() never blocks the publisher; each
    subscriber consumes on its own task, in emission order.
    """

    def __init__(self, *, maxsize: int = 1000) -> None:
        self.maxsize = maxsize
        self._subs: List[Subscription] = []

    def subscribe(self, handler: Handler) -> Subscription:
        sub = Subscription(handler, maxsize=self.maxsize)
        self._subs.append(sub)
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)
        await sub.close()

    def emit(self, event_type: str, **data: Any) -> Event:
        event = Event(event_type, data)
        for sub in list(self._subs):
            sub.offer(event)
        return event

    async def drain(self) -> None:
        """Wait until every subscriber has handled what was emitted so far."""
        for sub in list(self._subs):
            await sub.queue.join()

    async def close(self) -> None:
        subs, self._subs = self._subs, []
        for sub in subs:
            await sub.close()
