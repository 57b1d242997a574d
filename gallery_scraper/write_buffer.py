from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from .catalog_store import CatalogStore
from .extraction import TemplateRecord
from .utils import now_iso

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    record: TemplateRecord
    future: "asyncio.Future[int]"


class TemplateWriteBuffer:
    """
    Single writer in front of CatalogStore.upsert_template_batch.

    enqueue() never waits on the store: it parks the record and returns a
    future that resolves to the template row id once its batch is committed
    (or carries the store error if the batch failed). A full buffer drains
    immediately; a partial one drains at most ``flush_interval_ms`` after
    its first record was queued (the timer is not re-armed by later records).
    Only one drain task runs at a time, so flushes never overlap.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        batch_size: int = 25,
        flush_interval_ms: int = 750,
        max_recent: int = 250,
    ) -> None:
        self.store = store
        self.batch_size = max(1, int(batch_size))
        self.flush_interval_ms = max(0, int(flush_interval_ms))

        self._buffer: Deque[_Pending] = deque()
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._force = False
        self._closed = False

        self.flush_count = 0
        self._in_flight = 0
        self._successful = 0
        self._failed = 0
        self._last_error: Optional[str] = None
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max(1, int(max_recent)))

    @classmethod
    def from_config(cls, store: CatalogStore, cfg: Any) -> "TemplateWriteBuffer":
        return cls(
            store,
            batch_size=cfg.writer_batch_size,
            flush_interval_ms=cfg.writer_flush_interval_ms,
            max_recent=cfg.writer_max_recent,
        )

    # ---------------- public API ----------------

    def enqueue(self, record: TemplateRecord) -> "asyncio.Future[int]":
        if self._closed:
            raise RuntimeError("TemplateWriteBuffer is closed")
        fut: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._buffer.append(_Pending(record, fut))
        if len(self._buffer) >= self.batch_size:
            self._cancel_timer()
            self._ensure_drain()
        elif self._timer is None and not self._draining():
            self._arm_timer()
        return fut

    async def flush_all(self) -> None:
        """Drain everything queued, including a trailing partial batch."""
        self._cancel_timer()
        while self._buffer or self._draining():
            self._force = True
            self._ensure_drain()
            task = self._drain_task
            if task is None:
                raise RuntimeError("template writer has no drain task")
            await asyncio.shield(task)

    async def close(self) -> None:
        await self.flush_all()
        self._closed = True
        self._cancel_timer()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "queued": len(self._buffer),
            "in_flight": self._in_flight,
            "successful": self._successful,
            "failed": self._failed,
            "flushes": self.flush_count,
            "last_error": self._last_error,
            "recent": list(self._recent),
        }

    # ---------------- internals ----------------

    def _draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def _ensure_drain(self) -> None:
        if not self._draining():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain(), name="template-writer")

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.flush_interval_ms / 1000.0, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._force = True
        self._ensure_drain()

    async def _drain(self) -> None:
        while self._buffer:
            if len(self._buffer) < self.batch_size and not self._force:
                if self._timer is None:
                    self._arm_timer()
                return
            await self._flush_once()
        self._force = False

    async def _flush_once(self) -> None:
        n = min(self.batch_size, len(self._buffer))
        batch: List[_Pending] = [self._buffer.popleft() for _ in range(n)]
        self._in_flight += n
        self.flush_count += 1
        try:
            ids = await self.store.upsert_template_batch([p.record for p in batch])
        except Exception as e:
            self._failed += n
            self._last_error = f"{type(e).__name__}: {e}"
            logger.error("[writer] batch of %d failed: %s", n, self._last_error)
            for p in batch:
                self._remember(p.record, None, self._last_error)
                if not p.future.done():
                    p.future.set_exception(e)
        else:
            self._successful += n
            logger.debug("[writer] committed batch of %d", n)
            for p, row_id in zip(batch, ids):
                self._remember(p.record, row_id, None)
                if not p.future.done():
                    p.future.set_result(row_id)
        finally:
            self._in_flight -= n

    def _remember(self, record: TemplateRecord, row_id: Optional[int], error: Optional[str]) -> None:
        self._recent.append({
            "slug": record.slug,
            "template_id": record.template_id,
            "row_id": row_id,
            "ok": error is None,
            "error": error,
            "at": now_iso(),
        })
