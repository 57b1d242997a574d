from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

from .config import Config, ScrapeSettings
from .utils import ScrapeStopped, SessionFatalError, is_driver_disconnect, try_close_page

logger = logging.getLogger(__name__)


def _browser_args(cfg: Config) -> list[str]:
    args: list[str] = [
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--headless=new",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-background-timer-throttling",
        "--disable-renderer-backgrounding",
        "--disable-sync",
        "--metrics-recording-only",
        "--mute-audio",
        "--no-default-browser-check",
        "--no-first-run",
        "--disable-client-side-phishing-detection",
        "--disable-default-apps",
        "--disable-features=TranslateUI",
        "--hide-scrollbars",
    ]
    # screenshots need real rasterization
    args.extend([
        "--ignore-gpu-blocklist",
        "--enable-webgl",
        "--use-gl=angle" if sys.platform.startswith("win") else "--use-gl=egl",
    ])
    for a in cfg.browser_args_extra:
        if a.strip():
            args.append(a.strip())
    return args


@dataclass
class _Session:
    idx: int
    max_pages: int
    browser: Optional[Browser] = None
    context: Optional[BrowserContext] = None
    active_pages: int = 0
    pages_opened: int = 0          # since the current context was built
    generation: int = 0            # bumped on every rebuild/replace
    disabled: bool = False
    repairing: bool = False
    recycle_due: bool = False
    repair_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def connected(self) -> bool:
        if self.browser is None:
            return False
        probe = getattr(self.browser, "is_connected", None)
        if callable(probe):
            try:
                return bool(probe())
            except Exception:
                return False
        return True

    def spare(self) -> int:
        if self.disabled or self.repairing or self.recycle_due or self.context is None:
            return 0
        return max(0, self.max_pages - self.active_pages)


@dataclass
class PageHandle:
    page: Page
    session_idx: int
    generation: int
    broken: bool = False
    reason: str = ""

    def mark_broken(self, reason: str) -> None:
        self.broken = True
        self.reason = reason or "broken"


class SessionPool:
    """
    Pool of browser sessions, each allowing ``pages_per_browser`` concurrent pages.

    Bookkeeping (reservation counts, session swaps, waiter list) only changes
    under ``self._lock``; page work and browser launches happen outside it.
    A session whose engine died is replaced before the scan goes on; a page
    that cannot be opened escalates context rebuild -> session replacement ->
    disable session, and the pool keeps going with what is left.
    """

    def __init__(self, cfg: Config, settings: ScrapeSettings) -> None:
        self.cfg = cfg
        self.settings = settings
        self._pw: Optional[Playwright] = None
        self._sessions: List[_Session] = []
        self._lock = asyncio.Lock()
        self._waiters: Deque[asyncio.Future[None]] = deque()
        self._pending: Optional[ScrapeSettings] = None
        self._stopped = False
        self._started = False

        self.replacements = 0
        self.context_rebuilds = 0

    # ---------------- lifecycle ----------------

    @property
    def size(self) -> int:
        return len(self._sessions)

    @property
    def capacity(self) -> int:
        return sum(s.max_pages for s in self._sessions if not s.disabled)

    @property
    def pending_changes(self) -> bool:
        return self._pending is not None

    async def start(self) -> None:
        if self._started:
            return
        self._pw = await async_playwright().start()
        self._started = True
        await self._build_sessions(self.settings)

    async def _build_sessions(self, settings: ScrapeSettings) -> None:
        n = settings.effective_browser_instances
        if n > settings.browser_instances:
            logger.info(
                "[pool] raising browser instances %d -> %d to cover concurrency=%d",
                settings.browser_instances, n, settings.concurrency,
            )
        sessions: List[_Session] = []
        for i in range(n):
            s = _Session(idx=i, max_pages=settings.pages_per_browser)
            try:
                await self._launch(s)
            except Exception as e:
                logger.error("[pool] session %d failed to launch: %s", i, e)
                s.disabled = True
            sessions.append(s)
        self._sessions = sessions
        if all(s.disabled for s in sessions):
            raise SessionFatalError("no browser session could be launched")
        logger.info(
            "[pool] started sessions=%d pages_per_browser=%d capacity=%d",
            len(sessions), settings.pages_per_browser, self.capacity,
        )

    async def _launch(self, s: _Session) -> None:
        if self._pw is None:
            raise SessionFatalError("pool not started")
        proxy = {"server": self.cfg.proxy_server} if self.cfg.proxy_server else None
        browser = await self._pw.chromium.launch(
            headless=True,
            args=_browser_args(self.cfg),
            proxy=proxy,
            slow_mo=self.cfg.browser_slow_mo_ms or 0,
        )
        try:
            context = await self._new_context(browser)
        except Exception:
            with contextlib.suppress(Exception):
                await browser.close()
            raise
        s.browser = browser
        s.context = context
        s.pages_opened = 0
        s.recycle_due = False
        s.generation += 1

    async def _new_context(self, browser: Browser) -> BrowserContext:
        context = await browser.new_context(
            user_agent=self.cfg.user_agent,
            viewport={"width": self.cfg.viewport_width, "height": self.cfg.viewport_height},
            java_script_enabled=True,
            extra_http_headers={
                "Accept-Language": "en-US,en;q=0.9",
                "DNT": "1",
                "Upgrade-Insecure-Requests": "1",
            },
            ignore_https_errors=True,
        )
        context.set_default_timeout(self.settings.timeout_ms)
        context.set_default_navigation_timeout(self.settings.timeout_ms)
        return context

    async def _close_session(self, s: _Session) -> None:
        ctx, browser = s.context, s.browser
        s.context = None
        s.browser = None
        try:
            if ctx is not None:
                await ctx.close()
        except Exception as e:
            logger.warning("[pool] error while closing context of session %d: %s", s.idx, e)
        try:
            if browser is not None:
                await browser.close()
        except Exception as e:
            logger.warning("[pool] error while closing browser of session %d: %s", s.idx, e)

    async def shutdown(self) -> None:
        self.stop()
        for s in self._sessions:
            await self._close_session(s)
        self._sessions = []
        if self._pw is not None:
            try:
                await self._pw.stop()
            except Exception as e:
                logger.warning("[pool] error while stopping Playwright: %s", e)
        self._pw = None
        self._started = False
        logger.info("[pool] shut down")

    def stop(self) -> None:
        """Wake every parked waiter; further checkouts raise ScrapeStopped."""
        self._stopped = True
        self._wake(all_waiters=True)

    def reopen(self) -> None:
        self._stopped = False

    # ---------------- repair ----------------

    async def _rebuild_context(self, s: _Session, seen_generation: int, reason: str) -> None:
        async with s.repair_lock:
            if s.generation != seen_generation:
                return
            s.repairing = True
            try:
                logger.warning("[pool] rebuilding context of session %d: %s", s.idx, reason)
                old = s.context
                s.context = None
                if old is not None:
                    with contextlib.suppress(Exception):
                        await old.close()
                if s.browser is None:
                    raise SessionFatalError(f"session {s.idx} has no browser")
                s.context = await self._new_context(s.browser)
                s.pages_opened = 0
                s.recycle_due = False
                s.generation += 1
                self.context_rebuilds += 1
            finally:
                s.repairing = False

    async def _replace_session(self, s: _Session, seen_generation: int, reason: str) -> None:
        async with s.repair_lock:
            if s.generation != seen_generation:
                return
            s.repairing = True
            try:
                logger.warning("[pool] replacing session %d: %s", s.idx, reason)
                await self._close_session(s)
                await self._launch(s)
                self.replacements += 1
            finally:
                s.repairing = False

    async def _disable(self, s: _Session, reason: str) -> None:
        async with self._lock:
            s.disabled = True
        logger.error("[pool] session %d disabled, capacity now %d: %s", s.idx, self.capacity, reason)
        await self._close_session(s)
        self._wake(all_waiters=True)

    async def _open_page(self, s: _Session) -> Optional[Page]:
        """new_page with escalating repair; None once the session is given up."""
        gen = s.generation
        try:
            if s.context is None:
                raise SessionFatalError("context is closed")
            return await s.context.new_page()
        except Exception as e:
            first = str(e)
        try:
            if not s.connected():
                raise SessionFatalError(first)
            await self._rebuild_context(s, gen, first)
            return await s.context.new_page()  # type: ignore[union-attr]
        except Exception as e:
            second = str(e)
        try:
            await self._replace_session(s, s.generation, second)
            return await s.context.new_page()  # type: ignore[union-attr]
        except Exception as e:
            await self._disable(s, str(e))
            return None

    # ---------------- checkout / checkin ----------------

    def _wake(self, *, all_waiters: bool = False) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                if not all_waiters:
                    return

    async def acquire_page(self) -> PageHandle:
        loop = asyncio.get_running_loop()
        while True:
            if self._stopped:
                raise ScrapeStopped("pool stopped")
            dead: List[_Session] = []
            chosen: Optional[_Session] = None
            fut: Optional[asyncio.Future[None]] = None
            async with self._lock:
                for s in self._sessions:
                    if s.disabled or s.repairing:
                        continue
                    if not s.connected():
                        dead.append(s)
                        continue
                    if chosen is None and s.spare() > 0:
                        chosen = s
                if chosen is not None:
                    chosen.active_pages += 1
                elif not dead:
                    if all(s.disabled for s in self._sessions):
                        raise SessionFatalError("all browser sessions are disabled")
                    fut = loop.create_future()
                    self._waiters.append(fut)

            if chosen is None:
                for s in dead:
                    try:
                        await self._replace_session(s, s.generation, "browser disconnected")
                    except Exception as e:
                        await self._disable(s, str(e))
                if fut is not None:
                    # bounded park; rescan on timeout
                    await asyncio.wait({fut}, timeout=self.cfg.page_wait_timeout_ms / 1000.0)
                    if not fut.done():
                        fut.cancel()
                        with contextlib.suppress(ValueError):
                            self._waiters.remove(fut)
                continue

            page = await self._open_page(chosen)
            if page is None:
                async with self._lock:
                    chosen.active_pages = max(0, chosen.active_pages - 1)
                continue
            chosen.pages_opened += 1
            if self.cfg.context_recycle_after_pages and chosen.pages_opened >= self.cfg.context_recycle_after_pages:
                chosen.recycle_due = True
            return PageHandle(page=page, session_idx=chosen.idx, generation=chosen.generation)

    async def release_page(self, handle: PageHandle) -> None:
        await try_close_page(handle.page, self.cfg.page_close_timeout_ms)
        s = self._session(handle.session_idx)
        if s is None:
            self._wake()
            return

        async with self._lock:
            s.active_pages = max(0, s.active_pages - 1)
            idle = s.active_pages == 0

        if handle.broken and not s.disabled and s.generation == handle.generation:
            try:
                await self._replace_session(s, handle.generation, handle.reason)
            except Exception as e:
                await self._disable(s, str(e))
        elif s.recycle_due and idle and not s.disabled:
            try:
                await self._rebuild_context(s, s.generation, "periodic recycle")
            except Exception as e:
                logger.warning("[pool] periodic recycle of session %d failed: %s", s.idx, e)
                try:
                    await self._replace_session(s, s.generation, "periodic recycle failed")
                except Exception as e2:
                    await self._disable(s, str(e2))
            finally:
                s.recycle_due = False
        self._wake()

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[PageHandle]:
        handle = await self.acquire_page()
        try:
            yield handle
        except BaseException as e:
            if is_driver_disconnect(e):
                handle.mark_broken("driver_disconnect")
            raise
        finally:
            await asyncio.shield(self.release_page(handle))

    def _session(self, idx: int) -> Optional[_Session]:
        for s in self._sessions:
            if s.idx == idx:
                return s
        return None

    # ---------------- topology ----------------

    def update(self, settings: ScrapeSettings) -> bool:
        """
        Adopt new settings. Returns True when the topology must change; the
        rebuild itself waits for apply_pending_changes() at a batch boundary.
        """
        topology = (
            settings.effective_browser_instances != len(self._sessions)
            or settings.pages_per_browser != self.settings.pages_per_browser
        )
        self.settings = settings
        if topology and self._started:
            self._pending = settings
            logger.info(
                "[pool] topology change pending: sessions=%d pages_per_browser=%d",
                settings.effective_browser_instances, settings.pages_per_browser,
            )
        return topology

    async def apply_pending_changes(self) -> bool:
        if self._pending is None:
            return False
        settings, self._pending = self._pending, None
        if any(s.active_pages for s in self._sessions):
            logger.warning("[pool] pages still checked out, deferring topology change")
            self._pending = settings
            return False
        for s in self._sessions:
            await self._close_session(s)
        await self._build_sessions(settings)
        self._wake(all_waiters=True)
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "sessions": [
                {
                    "idx": s.idx,
                    "active_pages": s.active_pages,
                    "max_pages": s.max_pages,
                    "pages_opened": s.pages_opened,
                    "generation": s.generation,
                    "disabled": s.disabled,
                    "connected": s.connected(),
                }
                for s in self._sessions
            ],
            "capacity": self.capacity,
            "in_use": sum(s.active_pages for s in self._sessions),
            "waiting": sum(1 for f in self._waiters if not f.done()),
            "pending_changes": self.pending_changes,
            "replacements": self.replacements,
            "context_rebuilds": self.context_rebuilds,
            "stopped": self._stopped,
        }
