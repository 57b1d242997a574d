import io
import random

import pytest
from PIL import Image

from gallery_extensions.screenshot_rules import ScreenshotRules
from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.config import ScrapeSettings
from gallery_scraper.extraction import parse_publish_date, record_from_details
from gallery_scraper.object_store import LocalObjectStore
from gallery_scraper.template_scrape import (
    CAPTURING,
    COMPLETED,
    EXTRACTING,
    LOADING,
    PERSISTING,
    PROCESSING,
    SKIPPED,
    TemplateScraper,
)
from gallery_scraper.utils import ExtractionError, ScrapeStopped, TransientRemoteError
from gallery_scraper.write_buffer import TemplateWriteBuffer

STOREFRONT = "https://templates.example.com/html/cafe-theme"
LIVE = "https://cafe-theme.webflow.io"


class FakeConfig:
    image_concurrency = 1
    lightweight_details = True
    navigation_attempts = 2
    navigation_retry_delay_ms = 0


def _noisy_jpeg(size=(400, 300)):
    rnd = random.Random(3)
    img = Image.new("RGB", size)
    img.putdata([(rnd.randrange(256), rnd.randrange(256), rnd.randrange(256)) for _ in range(size[0] * size[1])])
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=90)
    return out.getvalue()


DETAILS = {
    "name": "Cafe Theme",
    "authorId": "studio-1",
    "authorName": "Studio One",
    "livePreviewUrl": LIVE,
    "price": "$49",
    "styles": ["Minimal"],
    "features": ["CMS", "Ecommerce"],
    "isCms": True,
    "isEcommerce": True,
    "publishDateRaw": "Published Dec 24, 2025",
}


class StubPage:
    def __init__(self, *, details=None, links=(), has_required=True, goto_errors=(), screenshot=None):
        self.details = DETAILS if details is None else details
        self.links = list(links)
        self.has_required = has_required
        self.goto_errors = list(goto_errors)
        self.screenshot_bytes = screenshot if screenshot is not None else _noisy_jpeg()
        self.visited = []
        self.routes = []
        self.removed = []

    async def route(self, pattern, handler):
        self.routes.append(("route", pattern))

    async def unroute(self, pattern, handler=None):
        self.routes.append(("unroute", pattern))

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if self.goto_errors:
            err = self.goto_errors.pop(0)
            if err is not None:
                raise err

    async def evaluate(self, script, arg=None):
        if "livePreviewUrl" in script:
            return self.details
        if "querySelectorAll('a[href]')" in script:
            return self.links
        if "runningFinite" in script:
            return {"runningFinite": 0, "scrollHeight": 900, "bodyHeight": 900}
        if "sels.some" in script:
            return self.has_required
        if isinstance(arg, list):
            self.removed.extend(arg)
        return None

    async def wait_for_load_state(self, state, timeout=None):
        return None

    async def wait_for_timeout(self, ms):
        return None

    async def screenshot(self, **kwargs):
        return self.screenshot_bytes


@pytest.fixture
def env(tmp_path):
    store = CatalogStore(tmp_path / "catalog.sqlite3")
    writer = TemplateWriteBuffer(store, batch_size=1, flush_interval_ms=10)
    objects = LocalObjectStore(tmp_path / "shots", "https://cdn.example.com/shots")
    scraper = TemplateScraper(FakeConfig(), store, writer, objects, ScreenshotRules(store))
    yield scraper, store, objects
    store.close()


def _settings(**kw):
    base = dict(animation_wait_ms=0, stability_stable_ms=0, nudge_scroll_ratio=0)
    base.update(kw)
    return ScrapeSettings().updated(**base)


async def _scrape(scraper, page, settings, url=STOREFRONT):
    phases = []
    outcome = await scraper.scrape(page, url, settings, set_phase=phases.append, check=lambda: None)
    return outcome, phases


def test_record_from_details_and_dates():
    rec = record_from_details("cafe-theme", STOREFRONT, DETAILS)
    assert rec.template_id == "wf_cafe-theme"
    assert rec.publish_date == "2025-12-24"
    assert rec.is_cms and rec.is_ecommerce
    assert parse_publish_date("sometime") is None
    with pytest.raises(ExtractionError):
        record_from_details("x", STOREFRONT, {"name": "No preview"})


@pytest.mark.asyncio
async def test_full_scrape_persists_template_and_screenshot(env):
    scraper, store, objects = env
    await store.add_featured_author("studio-1")
    page = StubPage(links=["/home-1", "/about"])

    outcome, phases = await _scrape(scraper, page, _settings())
    assert outcome.status == COMPLETED
    assert phases == [LOADING, EXTRACTING, CAPTURING, PROCESSING, PERSISTING]
    assert page.visited == [STOREFRONT, LIVE, "https://cafe-theme.webflow.io/home-1"]
    assert ("route", "**/*") in page.routes and ("unroute", "**/*") in page.routes

    row = await store.get_template("cafe-theme")
    assert row["id"] == outcome.row_id
    assert row["is_featured"] == 1
    assert row["is_alternate_homepage"] == 1
    assert row["alternate_homepage_path"] == "/home-1"
    assert row["screenshot_path"] == "https://cdn.example.com/shots/cafe-theme.webp"
    assert objects.path_for("cafe-theme.webp").exists()


@pytest.mark.asyncio
async def test_blacklisted_live_domain_is_skipped(env):
    scraper, store, _ = env
    await store.blacklist_template(LIVE)
    outcome, phases = await _scrape(scraper, StubPage(), _settings())
    assert outcome.status == SKIPPED
    assert outcome.message == "blacklisted"
    assert CAPTURING not in phases
    assert await store.get_template("cafe-theme") is None


@pytest.mark.asyncio
async def test_missing_required_selectors_skip(env):
    scraper, _, _ = env
    settings = _settings(required_selectors=[".hero"], skip_if_missing_required_selectors=True)
    outcome, _ = await _scrape(scraper, StubPage(has_required=False), settings)
    assert outcome.status == SKIPPED


@pytest.mark.asyncio
async def test_exclusions_are_removed_before_capture(env):
    scraper, store, _ = env
    await store.add_screenshot_exclusion(".cookie-banner")
    await store.add_screenshot_exclusion(".promo", author_id="studio-1")
    await store.add_screenshot_exclusion(".other", author_id="someone-else")
    page = StubPage()
    await _scrape(scraper, page, _settings(additional_screenshot_selectors=[".chat"]))
    assert page.removed == [".cookie-banner", ".promo", ".chat"]


@pytest.mark.asyncio
async def test_navigation_timeout_is_retried_then_fails(env):
    scraper, _, _ = env
    page = StubPage(goto_errors=[RuntimeError("Timeout 60000ms exceeded"), None])
    outcome, _ = await _scrape(scraper, page, _settings())
    assert outcome.status == COMPLETED
    assert page.visited[:2] == [STOREFRONT, STOREFRONT]

    page = StubPage(goto_errors=[RuntimeError("Timeout 60000ms exceeded")] * 2)
    with pytest.raises(TransientRemoteError):
        await _scrape(scraper, page, _settings())


@pytest.mark.asyncio
async def test_check_raises_between_phases(env):
    scraper, _, _ = env
    calls = {"n": 0}

    def check():
        calls["n"] += 1
        if calls["n"] == 2:
            raise ScrapeStopped("scrape stopped")

    with pytest.raises(ScrapeStopped):
        await scraper.scrape(StubPage(), STOREFRONT, _settings(), set_phase=lambda p: None, check=check)


@pytest.mark.asyncio
async def test_screenshots_only_updates_existing_row(env):
    scraper, store, _ = env
    first, _ = await _scrape(scraper, StubPage(), _settings())
    settings = _settings(job_mode="screenshots_only", append_cache_buster=True)
    await scraper.prepare_run(settings)

    page = StubPage(links=["/homepage"])
    outcome, phases = await _scrape(scraper, page, settings)
    assert outcome.status == COMPLETED
    assert outcome.row_id == first.row_id
    assert EXTRACTING not in phases
    assert page.visited[0] == LIVE

    row = await store.get_template("cafe-theme")
    assert row["screenshot_path"].startswith("https://cdn.example.com/shots/cafe-theme.webp?v=")
    assert row["alternate_homepage_path"] == "/homepage"

    with pytest.raises(ExtractionError):
        await _scrape(scraper, StubPage(), settings, url="https://templates.example.com/html/unknown-one")
