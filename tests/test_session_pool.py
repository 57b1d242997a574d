import asyncio

import pytest

import gallery_scraper.session_pool as pool_mod
from gallery_scraper.config import ScrapeSettings
from gallery_scraper.session_pool import SessionPool
from gallery_scraper.utils import ScrapeStopped, SessionFatalError


class FakeConfig:
    user_agent = "pytest-UA"
    viewport_width = 1280
    viewport_height = 800
    proxy_server = None
    browser_slow_mo_ms = 0
    browser_args_extra = ()
    page_close_timeout_ms = 500
    context_recycle_after_pages = 1000
    page_wait_timeout_ms = 50


class StubPage:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class StubContext:
    def __init__(self, browser):
        self.browser = browser
        self.closed = False
        self.pages = []
        self.new_page_raises = None

    def set_default_timeout(self, ms):
        self.timeout = ms

    def set_default_navigation_timeout(self, ms):
        self.nav_timeout = ms

    async def new_page(self):
        if self.new_page_raises:
            raise self.new_page_raises
        if self.browser.fail_pages:
            raise RuntimeError("Target page, context or browser has been closed")
        p = StubPage()
        self.pages.append(p)
        return p

    async def close(self):
        self.closed = True


class StubBrowser:
    def __init__(self, n):
        self.n = n
        self.connected = True
        self.closed = False
        self.fail_pages = False
        self.contexts = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        ctx = StubContext(self)
        self.contexts.append(ctx)
        return ctx

    async def close(self):
        self.closed = True


class StubChromium:
    def __init__(self):
        self.browsers = []
        self.launch_failures = 0
        self.launch_kwargs = None

    async def launch(self, **kwargs):
        self.launch_kwargs = kwargs
        if self.launch_failures:
            self.launch_failures -= 1
            raise RuntimeError("browser failed to start")
        b = StubBrowser(len(self.browsers))
        self.browsers.append(b)
        return b


class StubPlaywright:
    def __init__(self):
        self.chromium = StubChromium()
        self.stopped = False

    async def stop(self):
        self.stopped = True


class StubPlaywrightCM:
    def __init__(self, pw):
        self.pw = pw

    async def start(self):
        return self.pw


@pytest.fixture
def pw(monkeypatch):
    stub = StubPlaywright()
    monkeypatch.setattr(pool_mod, "async_playwright", lambda: StubPlaywrightCM(stub))
    return stub


def _settings(**kw):
    base = dict(concurrency=2, browser_instances=1, pages_per_browser=2)
    base.update(kw)
    return ScrapeSettings().updated(**base)


@pytest.mark.asyncio
async def test_start_sizes_sessions_to_cover_concurrency(pw):
    pool = SessionPool(FakeConfig(), _settings(concurrency=5, browser_instances=1, pages_per_browser=2))
    await pool.start()
    assert pool.size == 3
    assert pool.capacity == 6
    assert "--headless=new" in pw.chromium.launch_kwargs["args"]
    assert pw.chromium.browsers[0].context_kwargs["user_agent"] == "pytest-UA"
    await pool.shutdown()
    assert pw.stopped
    assert all(b.closed for b in pw.chromium.browsers)


@pytest.mark.asyncio
async def test_checkout_closes_page_and_frees_slot(pw):
    pool = SessionPool(FakeConfig(), _settings())
    await pool.start()
    async with pool.checkout() as h:
        assert pool.snapshot()["in_use"] == 1
        page = h.page
    assert page.closed
    assert pool.snapshot()["in_use"] == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_waiter_gets_page_when_one_is_released(pw):
    pool = SessionPool(FakeConfig(), _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    first = await pool.acquire_page()

    waiter = asyncio.create_task(pool.acquire_page())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await pool.release_page(first)
    second = await asyncio.wait_for(waiter, 1)
    assert second.session_idx == 0
    await pool.release_page(second)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_disconnected_session_is_replaced(pw):
    pool = SessionPool(FakeConfig(), _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    pw.chromium.browsers[0].connected = False

    h = await pool.acquire_page()
    assert pool.replacements == 1
    assert len(pw.chromium.browsers) == 2
    assert pw.chromium.browsers[0].closed
    await pool.release_page(h)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_driver_disconnect_inside_checkout_replaces_session(pw):
    pool = SessionPool(FakeConfig(), _settings())
    await pool.start()
    with pytest.raises(RuntimeError):
        async with pool.checkout():
            raise RuntimeError("Connection closed while reading from the driver")
    assert pool.replacements == 1
    await pool.shutdown()


@pytest.mark.asyncio
async def test_new_page_failure_rebuilds_context(pw):
    pool = SessionPool(FakeConfig(), _settings())
    await pool.start()
    browser = pw.chromium.browsers[0]
    browser.contexts[0].new_page_raises = RuntimeError("context wedged")

    h = await pool.acquire_page()
    assert pool.context_rebuilds == 1
    assert browser.contexts[0].closed
    assert len(browser.contexts) == 2
    await pool.release_page(h)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_unrecoverable_session_is_disabled_then_fatal(pw):
    pool = SessionPool(FakeConfig(), _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    pw.chromium.browsers[0].fail_pages = True
    pw.chromium.launch_failures = 1  # the replacement launch fails too

    with pytest.raises(SessionFatalError):
        await pool.acquire_page()
    assert pool.capacity == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_stop_wakes_waiters_with_scrape_stopped(pw):
    cfg = FakeConfig()
    cfg.page_wait_timeout_ms = 10_000
    pool = SessionPool(cfg, _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    h = await pool.acquire_page()
    waiter = asyncio.create_task(pool.acquire_page())
    await asyncio.sleep(0.01)

    pool.stop()
    with pytest.raises(ScrapeStopped):
        await asyncio.wait_for(waiter, 1)
    await pool.release_page(h)

    pool.reopen()
    h2 = await pool.acquire_page()
    await pool.release_page(h2)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_periodic_recycle_when_idle(pw):
    cfg = FakeConfig()
    cfg.context_recycle_after_pages = 2
    pool = SessionPool(cfg, _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    browser = pw.chromium.browsers[0]
    for _ in range(2):
        h = await pool.acquire_page()
        await pool.release_page(h)
    assert pool.context_rebuilds == 1
    assert len(browser.contexts) == 2
    assert pool.snapshot()["sessions"][0]["pages_opened"] == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_replacement_of_recycle_due_session_is_usable(pw):
    cfg = FakeConfig()
    cfg.context_recycle_after_pages = 2
    pool = SessionPool(cfg, _settings(concurrency=1, pages_per_browser=1))
    await pool.start()
    h = await pool.acquire_page()
    await pool.release_page(h)

    # second page marks the session for recycling, then the driver dies
    with pytest.raises(RuntimeError):
        async with pool.checkout():
            raise RuntimeError("Connection closed while reading from the driver")
    assert pool.replacements == 1
    assert pool.snapshot()["sessions"][0]["pages_opened"] == 0

    h = await asyncio.wait_for(pool.acquire_page(), 2)
    assert h.page is pw.chromium.browsers[-1].contexts[-1].pages[-1]
    await pool.release_page(h)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_topology_change_waits_for_idle_pool(pw):
    pool = SessionPool(FakeConfig(), _settings(concurrency=2, browser_instances=1, pages_per_browser=2))
    await pool.start()
    assert not pool.update(_settings(concurrency=2, browser_instances=1, pages_per_browser=2, timeout_ms=30_000))

    assert pool.update(_settings(concurrency=4, browser_instances=2, pages_per_browser=2))
    assert pool.pending_changes

    h = await pool.acquire_page()
    assert not await pool.apply_pending_changes()
    await pool.release_page(h)

    assert await pool.apply_pending_changes()
    assert pool.size == 2
    assert not pool.pending_changes
    await pool.shutdown()
