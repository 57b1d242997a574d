from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from . import events as ev
from .admission import AdmissionController
from .config import ScrapeSettings
from .events import EventBus
from .failure_monitor import FailureRateMonitor
from .template_scrape import (
    COMPLETED,
    FAILED,
    PENDING,
    SKIPPED,
    ScrapeOutcome,
)
from .utils import (
    CURRENT_UNIT,
    ScrapeStopped,
    SessionFatalError,
    extract_slug,
    is_driver_disconnect,
    is_timeout_error,
    now_iso,
)

logger = logging.getLogger(__name__)

# Orchestrator states
IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"
TIMEOUT_PAUSED = "timeout_paused"
STOPPED = "stopped"
# COMPLETED is shared with the unit phase name


@dataclass
class ScrapeState:
    status: str = IDLE
    session_id: Optional[int] = None
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: List[str] = field(default_factory=list)
    paused: List[str] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)
    batch_number: int = 0
    pause_reason: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class CancelToken:
    """Cooperative stop flag handed to every unit; checked at each phase boundary."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScrapeStopped("scrape stopped")


@dataclass
class UnitOfWork:
    url: str
    slug: str
    phase: str = PENDING
    error: Optional[str] = None
    name: Optional[str] = None
    live_preview_url: Optional[str] = None
    row_id: Optional[int] = None
    parked: bool = False          # timed out and held in the paused set
    started_at: Optional[str] = None
    phase_started_at: Optional[str] = None
    _t0: float = 0.0
    _phase_t0: float = 0.0

    def enter(self, phase: str) -> float:
        """Switch phase; returns seconds spent in the previous one."""
        now = time.monotonic()
        elapsed = now - self._phase_t0 if self._phase_t0 else 0.0
        if self.started_at is None:
            self.started_at = now_iso()
            self._t0 = now
        self.phase = phase
        self.phase_started_at = now_iso()
        self._phase_t0 = now
        return elapsed

    def phase_elapsed_s(self) -> float:
        return round(time.monotonic() - self._phase_t0, 3) if self._phase_t0 else 0.0

    def total_elapsed_s(self) -> float:
        return round(time.monotonic() - self._t0, 3) if self._t0 else 0.0

    def view(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "slug": self.slug,
            "phase": self.phase,
            "name": self.name,
            "error": self.error,
            "phase_started_at": self.phase_started_at,
            "phase_elapsed_s": self.phase_elapsed_s(),
            "elapsed_s": self.total_elapsed_s(),
        }


@dataclass
class Batch:
    number: int
    units: List[UnitOfWork]
    batch_id: Optional[int] = None
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    def counts(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class BatchOrchestrator:
    """
    Drives a URL list through the scraper in bounded batches.

    Each URL is in exactly one of remaining / in-flight / paused / terminal.
    Workers take a URL out of remaining only after they hold an admission
    permit and the run is still dispatching; a stopped unit goes back to the
    front of remaining. Timeout failures count as failed and are parked in
    the paused set until resume_from_auto_pause() replays them.
    """

    def __init__(
        self,
        settings: ScrapeSettings,
        pool: Any,
        scraper: Any,
        *,
        events: Optional[EventBus] = None,
        monitor: Optional[FailureRateMonitor] = None,
        checkpoint: Any = None,
        progress_every: int = 5,
    ) -> None:
        self.settings = settings
        self.pool = pool
        self.scraper = scraper
        self.events = events or EventBus()
        self.monitor = monitor or FailureRateMonitor()
        self.checkpoint = checkpoint
        self.progress_every = max(1, int(progress_every))
        self.admission = AdmissionController(settings.concurrency, name="scrape")

        self._status = IDLE
        self._resume_gate = asyncio.Event()
        self._resume_gate.set()
        self._token = CancelToken()

        self._remaining: Dict[str, None] = {}
        self._paused: Dict[str, None] = {}
        self._in_flight: Dict[str, UnitOfWork] = {}
        self._terminal: Dict[str, str] = {}
        self._counts = {"processed": 0, "successful": 0, "failed": 0, "skipped": 0}
        self._total = 0
        self._batch: Optional[Batch] = None
        self._batch_number = 0
        self._session_id: Optional[int] = None
        self._pause_reason: Optional[str] = None
        self._error: Optional[str] = None
        self._started_at: Optional[str] = None
        self._completed_at: Optional[str] = None
        self._last_progress = 0
        self._fatal: Optional[BaseException] = None

    # ---------------- observation ----------------

    @property
    def status(self) -> str:
        return self._status

    @property
    def state(self) -> ScrapeState:
        return ScrapeState(
            status=self._status,
            session_id=self._session_id,
            total=self._total,
            remaining=list(self._remaining),
            paused=list(self._paused),
            in_flight=list(self._in_flight),
            batch_number=self._batch_number,
            pause_reason=self._pause_reason,
            error=self._error,
            started_at=self._started_at,
            updated_at=now_iso(),
            completed_at=self._completed_at,
            **self._counts,
        )

    @property
    def current_batch(self) -> List[Dict[str, Any]]:
        if self._batch is None:
            return []
        return [u.view() for u in self._batch.units]

    def terminal_urls(self) -> Dict[str, str]:
        return dict(self._terminal)

    def realtime(self) -> Dict[str, Any]:
        writer = getattr(self.scraper, "writer", None)
        return {
            "state": self.state.as_dict(),
            "settings": self.settings.as_dict(),
            "admission": self.admission.snapshot(),
            "pool": self.pool.snapshot(),
            "monitor": self.monitor.snapshot(),
            "writer": writer.snapshot() if writer is not None else None,
            "in_flight": [u.view() for u in self._in_flight.values()],
        }

    # ---------------- control ----------------

    def _set_status(self, status: str, **extra: Any) -> None:
        if status == self._status:
            return
        old, self._status = self._status, status
        logger.info("[orchestrator] %s -> %s", old, status)
        self.events.emit(ev.STATE_CHANGE, previous=old, status=status, **extra)

    def pause(self) -> bool:
        if self._status != RUNNING:
            return False
        self._pause_reason = "manual"
        self._resume_gate.clear()
        self._set_status(PAUSED)
        self.events.emit(ev.PAUSED, reason="manual", processed=self._counts["processed"])
        return True

    def resume(self) -> bool:
        """Resume dispatch. From timeout_paused the paused URLs stay parked."""
        if self._status not in (PAUSED, TIMEOUT_PAUSED):
            return False
        self._pause_reason = None
        self._set_status(RUNNING)
        self._resume_gate.set()
        return True

    def resume_from_auto_pause(self) -> int:
        """Move the paused URLs back to the front of remaining and resume. Returns how many moved."""
        moved = list(self._paused)
        if moved:
            self._remaining = {**dict.fromkeys(moved), **self._remaining}
            self._paused.clear()
            n = len(moved)
            self._counts["processed"] = max(0, self._counts["processed"] - n)
            self._counts["failed"] = max(0, self._counts["failed"] - n)
        self.monitor.reset_consecutive()
        logger.info("[orchestrator] replaying %d paused urls", len(moved))
        if self._status in (PAUSED, TIMEOUT_PAUSED):
            self.resume()
        return len(moved)

    def stop(self) -> None:
        if self._status in (IDLE, COMPLETED, STOPPED):
            return
        logger.info("[orchestrator] stop requested")
        self._token.cancel()
        self.pool.stop()
        # wake the dispatch loop; it sees the token and exits
        self._resume_gate.set()

    def update_settings(self, **changes: Any) -> ScrapeSettings:
        new = self.settings.updated(**changes)
        if new == self.settings:
            return new
        self.settings = new
        self.admission.resize(new.concurrency)
        if self.pool.update(new):
            logger.info("[orchestrator] pool topology change queued for the next batch")
        self.events.emit(ev.STATE_CHANGE, status=self._status, settings=new.as_dict())
        return new

    # ---------------- run ----------------

    async def run(self, urls: Iterable[str], *, session_id: Optional[int] = None) -> ScrapeState:
        if self._status in (RUNNING, PAUSED, TIMEOUT_PAUSED):
            raise RuntimeError("orchestrator is already running")

        self._reset(urls)
        if session_id is not None and self.checkpoint is not None:
            await self._restore_progress(session_id)
        elif self.checkpoint is not None:
            session_id = await self.checkpoint.start_session(
                list(self._remaining),
                self.settings.as_dict(),
                session_type=self.settings.job_mode,
                batch_size=self.settings.batch_size,
            )
        self._session_id = session_id
        self._set_status(RUNNING, session_id=session_id, total=self._total)

        try:
            await self.scraper.prepare_run(self.settings)
            await self._dispatch_loop()
        except Exception as e:
            self._error = f"{type(e).__name__}: {e}"
            logger.exception("[orchestrator] run aborted")
            self.events.emit(ev.ERROR, scope="session", message=self._error)
            self._token.cancel()
        finally:
            await self._finish()
        return self.state

    def _reset(self, urls: Iterable[str]) -> None:
        self._token = CancelToken()
        self._resume_gate.set()
        self.pool.reopen()
        self._remaining = dict.fromkeys(u.strip() for u in urls if u and u.strip())
        self._paused = {}
        self._in_flight = {}
        self._terminal = {}
        self._counts = {"processed": 0, "successful": 0, "failed": 0, "skipped": 0}
        self._total = len(self._remaining)
        self._batch = None
        self._batch_number = 0
        self._pause_reason = None
        self._error = None
        self._fatal = None
        self._last_progress = 0
        self._started_at = now_iso()
        self._completed_at = None

    async def _restore_progress(self, session_id: int) -> None:
        progress = await self.checkpoint.load_progress(session_id)
        replayed = progress.get("paused", 0)
        self._counts["processed"] = max(0, progress.get("processed", 0) - replayed)
        self._counts["failed"] = max(0, progress.get("failed", 0) - replayed)
        self._counts["successful"] = progress.get("successful", 0)
        self._counts["skipped"] = progress.get("skipped", 0)
        self._total = self._counts["processed"] + len(self._remaining)
        self._batch_number = progress.get("batch_number", 0)
        await self.checkpoint.mark_resumed(session_id)
        logger.info(
            "[orchestrator] resuming session %d: %d done, %d to go",
            session_id, self._counts["processed"], len(self._remaining),
        )

    def _dispatching(self) -> bool:
        if self._token.cancelled:
            return False
        return bool(self._remaining) or self._status in (PAUSED, TIMEOUT_PAUSED)

    async def _dispatch_loop(self) -> None:
        while self._dispatching():
            if not self._resume_gate.is_set():
                await self._save_checkpoint(status=self._status)
                await self._resume_gate.wait()
                continue

            # topology changes only between batches
            if self.pool.pending_changes:
                await self.pool.apply_pending_changes()

            size = self.settings.batch_size
            urls = list(itertools.islice(self._remaining, size))
            self._batch_number += 1
            batch = Batch(self._batch_number, [UnitOfWork(u, extract_slug(u)) for u in urls])
            await self._run_batch(batch)

    async def _run_batch(self, batch: Batch) -> None:
        self._batch = batch
        left = len(self._remaining)
        total_batches = self._batch_number - 1 + math.ceil(left / max(1, self.settings.batch_size))
        logger.info("[orchestrator] batch %d/%d starting (%d urls)", batch.number, total_batches, len(batch.units))
        self.events.emit(ev.BATCH_START, batch=batch.number, size=len(batch.units), total_batches=total_batches)
        if self.checkpoint is not None and self._session_id is not None:
            batch.batch_id = await self._guard(
                self.checkpoint.start_batch(self._session_id, batch.number, [u.url for u in batch.units])
            )

        tasks = [asyncio.create_task(self._worker(u, batch), name=f"unit-{u.slug}") for u in batch.units]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        undispatched = sum(1 for u in batch.units if u.phase == PENDING)
        self.events.emit(ev.BATCH_COMPLETE, batch=batch.number, undispatched=undispatched, **batch.counts())
        logger.info(
            "[orchestrator] batch %d done: %d ok, %d failed, %d skipped, %d undispatched",
            batch.number, batch.successful, batch.failed, batch.skipped, undispatched,
        )
        if self.checkpoint is not None and batch.batch_id is not None:
            status = "completed" if undispatched == 0 else "partial"
            await self._guard(self.checkpoint.complete_batch(batch.batch_id, batch.counts(), status=status))
        await self._save_checkpoint(last_batch_id=batch.batch_id)

    # ---------------- workers ----------------

    async def _worker(self, unit: UnitOfWork, batch: Batch) -> None:
        CURRENT_UNIT.set(unit.slug)
        await self.admission.acquire()
        try:
            if self._token.cancelled or not self._resume_gate.is_set() or unit.url not in self._remaining:
                return
            self._remaining.pop(unit.url, None)
            self._in_flight[unit.url] = unit
            outcome, error = await self._attempt(unit)
        finally:
            self.admission.release()
        await self._observe(unit, batch, outcome, error)

    async def _attempt(self, unit: UnitOfWork) -> Tuple[Optional[ScrapeOutcome], Optional[BaseException]]:
        settings = self.settings
        for attempt in (1, 2):
            try:
                async with self.pool.checkout() as handle:
                    outcome = await self.scraper.scrape(
                        handle.page,
                        unit.url,
                        settings,
                        set_phase=lambda phase: self._set_phase(unit, phase),
                        check=self._token.raise_if_cancelled,
                    )
                return outcome, None
            except Exception as e:
                retry = (
                    attempt == 1
                    and is_driver_disconnect(e)
                    and not isinstance(e, SessionFatalError)
                    and not self._token.cancelled
                )
                if not retry:
                    return None, e
                logger.warning("[orchestrator] browser session lost on %s, retrying on a fresh session", unit.slug)
        return None, None  # pragma: no cover

    def _set_phase(self, unit: UnitOfWork, phase: str) -> None:
        prev = unit.phase
        elapsed = unit.enter(phase)
        self.events.emit(
            ev.TEMPLATE_PHASE,
            url=unit.url,
            slug=unit.slug,
            phase=phase,
            previous=prev,
            previous_elapsed_s=round(elapsed, 3),
            batch=self._batch_number,
        )

    async def _observe(
        self, unit: UnitOfWork, batch: Batch, outcome: Optional[ScrapeOutcome], error: Optional[BaseException]
    ) -> None:
        url = unit.url
        if isinstance(error, (ScrapeStopped, SessionFatalError)):
            self._in_flight.pop(url, None)
            self._remaining = {url: None, **self._remaining}
            unit.phase = PENDING
            unit.error = None
            if isinstance(error, SessionFatalError) and self._fatal is None:
                self._fatal = error
                self._error = f"{type(error).__name__}: {error}"
                logger.error("[orchestrator] no usable browser sessions left, stopping: %s", error)
                self.events.emit(ev.ERROR, scope="session", message=self._error)
                self.stop()
            return

        self._in_flight.pop(url, None)
        if outcome is not None:
            unit.name = outcome.name
            unit.live_preview_url = outcome.live_preview_url
            unit.row_id = outcome.row_id

        if outcome is not None and outcome.status == COMPLETED:
            phase = COMPLETED
            self._counts["successful"] += 1
            batch.successful += 1
            self._terminal[url] = COMPLETED
            self.monitor.record(True)
        elif outcome is not None and outcome.status == SKIPPED:
            phase = SKIPPED
            unit.error = outcome.message or None
            self._counts["skipped"] += 1
            batch.skipped += 1
            self._terminal[url] = SKIPPED
            self.monitor.record(True)
        else:
            phase = FAILED
            timed_out = error is not None and is_timeout_error(error)
            unit.error = f"{type(error).__name__}: {error}" if error is not None else "no outcome"
            self._counts["failed"] += 1
            batch.failed += 1
            if timed_out:
                unit.parked = True
                self._paused[url] = None
            else:
                self._terminal[url] = FAILED
            self.monitor.record(False, is_timeout=timed_out)
            logger.warning("[orchestrator] %s failed%s: %s", unit.slug, " (timeout)" if timed_out else "", unit.error)
            self.events.emit(ev.ERROR, scope="unit", url=url, slug=unit.slug, message=unit.error, timeout=timed_out)

        self._counts["processed"] += 1
        batch.processed += 1
        self._set_phase(unit, phase)
        if self.checkpoint is not None and batch.batch_id is not None:
            await self._guard(self.checkpoint.record_unit(batch.batch_id, unit))

        if self._counts["processed"] - self._last_progress >= self.progress_every:
            self._last_progress = self._counts["processed"]
            self._emit_progress()

        if phase == FAILED and self._status == RUNNING and self.monitor.should_auto_pause():
            self._auto_pause(self.monitor.last_reason or "failure threshold reached")

    def _auto_pause(self, reason: str) -> None:
        self._pause_reason = reason
        self._resume_gate.clear()
        self._set_status(TIMEOUT_PAUSED, reason=reason)
        logger.warning("[orchestrator] auto-paused: %s (%d urls parked)", reason, len(self._paused))
        self.events.emit(ev.TIMEOUT_PAUSED, reason=reason, paused=list(self._paused), monitor=self.monitor.snapshot())

    def _emit_progress(self) -> None:
        total = max(1, self._total)
        self.events.emit(
            ev.PROGRESS,
            total=self._total,
            remaining=len(self._remaining),
            paused=len(self._paused),
            in_flight=len(self._in_flight),
            percent=round(100.0 * self._counts["processed"] / total, 1),
            **self._counts,
        )

    # ---------------- persistence ----------------

    async def _guard(self, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except Exception as e:
            logger.error("[checkpoint] write failed: %s", e)
            return None

    async def _save_checkpoint(self, *, status: Optional[str] = None, last_batch_id: Optional[int] = None) -> None:
        if self.checkpoint is None or self._session_id is None:
            return
        state = self.state
        await self._guard(self.checkpoint.save_resume_point(self._session_id, state, last_batch_id=last_batch_id))
        await self._guard(self.checkpoint.update_session(self._session_id, state, status=status))

    async def _finish(self) -> None:
        finish = getattr(self.scraper, "finish_run", None)
        if finish is not None:
            await self._guard(finish())

        was_timeout_paused = self._status == TIMEOUT_PAUSED
        if self._token.cancelled:
            self._set_status(STOPPED)
        else:
            self._set_status(COMPLETED)
        self._completed_at = now_iso()
        self._batch = None
        self._emit_progress()

        session_status = self._status
        if self._status == STOPPED and was_timeout_paused:
            session_status = TIMEOUT_PAUSED
        if self._error and self._fatal is None and self._status == STOPPED:
            session_status = "failed"
        await self._save_checkpoint(status=session_status)
        logger.info(
            "[orchestrator] run %s: %d/%d processed (%d ok, %d failed, %d skipped), %d remaining, %d paused",
            self._status, self._counts["processed"], self._total, self._counts["successful"],
            self._counts["failed"], self._counts["skipped"], len(self._remaining), len(self._paused),
        )
