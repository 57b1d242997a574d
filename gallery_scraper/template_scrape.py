from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .admission import AdmissionController
from .catalog_store import CatalogStore, TemplateIndexEntry
from .config import Config, ScrapeSettings
from .extraction import TemplateRecord, extract_details
from .homepage import TargetResolution, resolve_target
from .imaging import encode_screenshot
from .object_store import ObjectStore
from .stabilize import capture_screenshot, page_has_any_selector, prepare_page
from .utils import (
    ExtractionError,
    TransientRemoteError,
    extract_slug,
    is_driver_disconnect,
    is_timeout_error,
    now_ms,
)
from .write_buffer import TemplateWriteBuffer

logger = logging.getLogger(__name__)

# Unit phases, in order
PENDING = "pending"
LOADING = "loading"
EXTRACTING = "extracting-details"
CAPTURING = "capturing-screenshot"
PROCESSING = "processing-image"
PERSISTING = "persisting"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"

TERMINAL_PHASES = frozenset({COMPLETED, FAILED, SKIPPED})

_HEAVY_RESOURCES = frozenset({"image", "media", "font"})


async def _block_heavy(route, request):
    if request.resource_type in _HEAVY_RESOURCES:
        return await route.abort()
    return await route.continue_()


@dataclass
class ScrapeOutcome:
    status: str                         # COMPLETED or SKIPPED
    slug: str
    name: Optional[str] = None
    live_preview_url: Optional[str] = None
    row_id: Optional[int] = None
    screenshot_path: Optional[str] = None
    message: str = ""


@dataclass
class _Shot:
    resolution: TargetResolution
    data: Optional[bytes]


class TemplateScraper:
    """
    The per-unit work: storefront details, live preview screenshot, image
    encoding, upload and persistence. ``set_phase`` reports each phase entry;
    ``check`` raises once the run is stopped and is called at every phase boundary.
    """

    def __init__(
        self,
        cfg: Config,
        store: CatalogStore,
        writer: TemplateWriteBuffer,
        objects: ObjectStore,
        rules: Any,
        *,
        image_gate: Optional[AdmissionController] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.writer = writer
        self.objects = objects
        self.rules = rules
        self.image_gate = image_gate or AdmissionController(cfg.image_concurrency, name="image")
        self._index: Dict[str, TemplateIndexEntry] = {}

    async def prepare_run(self, settings: ScrapeSettings) -> None:
        """Per-run setup; screenshots-only runs need the existing catalog rows."""
        if settings.job_mode == "screenshots_only":
            self._index = await self.store.load_template_index()
            logger.info("[scrape] screenshots-only run over %d catalog templates", len(self._index))

    async def finish_run(self) -> None:
        await self.writer.flush_all()

    # ---------------- navigation ----------------

    async def navigate(self, page: Any, url: str, timeout_ms: int) -> None:
        attempts = max(1, self.cfg.navigation_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                return
            except Exception as e:
                if is_driver_disconnect(e) or not is_timeout_error(e):
                    raise
                if attempt >= attempts:
                    raise TransientRemoteError(f"navigation timed out after {attempts} attempts: {url}") from e
                delay_ms = self.cfg.navigation_retry_delay_ms * attempt
                logger.warning("[scrape] navigation timeout (%d/%d) for %s, retrying in %dms", attempt, attempts, url, delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)

    # ---------------- entry point ----------------

    async def scrape(
        self,
        page: Any,
        url: str,
        settings: ScrapeSettings,
        *,
        set_phase: Callable[[str], None],
        check: Callable[[], None],
    ) -> ScrapeOutcome:
        slug = extract_slug(url)
        if settings.job_mode == "screenshots_only":
            return await self._scrape_screenshot_only(page, url, slug, settings, set_phase, check)
        return await self._scrape_full(page, url, slug, settings, set_phase, check)

    async def _scrape_full(self, page, url, slug, settings, set_phase, check) -> ScrapeOutcome:
        check()
        set_phase(LOADING)
        blocked = self.cfg.lightweight_details
        if blocked:
            await page.route("**/*", _block_heavy)
        await self.navigate(page, url, settings.timeout_ms)

        check()
        set_phase(EXTRACTING)
        record = await extract_details(page, slug, url)
        if blocked:
            await page.unroute("**/*", _block_heavy)

        if await self.rules.is_blacklisted(record.live_preview_url):
            logger.info("[scrape] %s skipped: live preview domain is blacklisted", slug)
            return ScrapeOutcome(SKIPPED, slug, record.name, record.live_preview_url, message="blacklisted")
        record.is_featured = await self.rules.is_featured(record.author_id)

        check()
        set_phase(CAPTURING)
        shot = await self._capture(page, record.live_preview_url, slug, settings, record.author_id)
        if shot is None:
            return ScrapeOutcome(
                SKIPPED, slug, record.name, record.live_preview_url, message="required selectors missing"
            )
        self._apply_resolution(record, shot.resolution)

        check()
        set_phase(PROCESSING)
        record.screenshot_path = await self._store_image(slug, shot.data, settings)

        check()
        set_phase(PERSISTING)
        row_id = await self.writer.enqueue(record)
        return ScrapeOutcome(
            COMPLETED, slug, record.name, record.live_preview_url, row_id=row_id,
            screenshot_path=record.screenshot_path,
        )

    async def _scrape_screenshot_only(self, page, url, slug, settings, set_phase, check) -> ScrapeOutcome:
        check()
        set_phase(LOADING)
        entry = self._index.get(slug)
        if entry is None:
            entry = (await self.store.load_template_index()).get(slug)
        if entry is None or not entry.live_preview_url:
            raise ExtractionError(f"Template {slug} not found in catalog")

        check()
        set_phase(CAPTURING)
        shot = await self._capture(page, entry.live_preview_url, slug, settings, entry.author_id)
        if shot is None:
            return ScrapeOutcome(SKIPPED, slug, entry.name, entry.live_preview_url, message="required selectors missing")

        check()
        set_phase(PROCESSING)
        path = await self._store_image(slug, shot.data, settings)
        if path is None:
            raise ExtractionError(f"No usable screenshot for {slug}")

        check()
        set_phase(PERSISTING)
        res = shot.resolution
        await self.store.update_template_screenshot(
            entry.id,
            screenshot_path=path,
            screenshot_url=res.screenshot_url,
            is_alternate_homepage=res.is_alternate_homepage,
            alternate_homepage_path=res.detected_path,
        )
        return ScrapeOutcome(
            COMPLETED, slug, entry.name, entry.live_preview_url, row_id=entry.id, screenshot_path=path
        )

    # ---------------- screenshot steps ----------------

    @staticmethod
    def _apply_resolution(record: TemplateRecord, res: TargetResolution) -> None:
        record.screenshot_url = res.screenshot_url
        record.is_alternate_homepage = res.is_alternate_homepage
        record.alternate_homepage_path = res.detected_path

    async def _capture(
        self, page: Any, live_url: str, slug: str, settings: ScrapeSettings, author_id: Optional[str]
    ) -> Optional[_Shot]:
        """
        None means the unit should be skipped. A timeout fails the unit; any
        other capture error only costs the screenshot.
        """
        await self.navigate(page, live_url, settings.timeout_ms)
        resolution = await resolve_target(page, live_url)
        if resolution.is_alternate_homepage:
            logger.info("[scrape] %s: using alternate homepage %s", slug, resolution.detected_path)
            await self.navigate(page, resolution.screenshot_url, settings.timeout_ms)

        if settings.skip_if_missing_required_selectors and settings.required_selectors:
            if not await page_has_any_selector(page, settings.required_selectors):
                logger.info("[scrape] %s skipped: none of the required selectors present", slug)
                return None

        selectors = await self.rules.exclusion_selectors(author_id, extra=settings.additional_screenshot_selectors)
        try:
            settle = await prepare_page(page, settings, selectors)
            if not settle.settled:
                logger.debug("[scrape] %s did not settle within %dms", slug, settle.waited_ms)
            data = await capture_screenshot(page, settings, slug=slug)
        except Exception as e:
            if is_driver_disconnect(e):
                raise
            if is_timeout_error(e):
                raise TransientRemoteError(f"screenshot timed out for {slug}: {e}") from e
            logger.warning("[scrape] screenshot failed for %s: %s", slug, e)
            data = None
        return _Shot(resolution, data)

    async def _store_image(self, slug: str, data: Optional[bytes], settings: ScrapeSettings) -> Optional[str]:
        if not data:
            return None
        async with self.image_gate:
            encoded = await asyncio.to_thread(encode_screenshot, data, quality=settings.webp_quality)
        if encoded is None:
            return None
        url = await self.objects.put(f"{slug}.webp", encoded, "image/webp")
        if settings.append_cache_buster:
            url = f"{url}?v={now_ms()}"
        return url
