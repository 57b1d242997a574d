from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from .utils import getenv_bool, getenv_int, getenv_str, getenv_float, getenv_csv

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

SCREENSHOT_DIR: Path = DATA_DIR / "screenshots"
SESSIONS_DIR: Path = DATA_DIR / "sessions"
CATALOG_DB: Path = DATA_DIR / "catalog.sqlite3"
LOG_FILE: Path = LOG_DIR / "scraper.log"

for p in (DATA_DIR, LOG_DIR, SCREENSHOT_DIR, SESSIONS_DIR):
    p.mkdir(parents=True, exist_ok=True)

JobMode = Literal["full", "screenshots_only"]

# (min, max) bounds applied to every per-run override
SETTINGS_LIMITS: Dict[str, Tuple[float, float]] = {
    "concurrency": (1, 100),
    "browser_instances": (1, 30),
    "pages_per_browser": (1, 50),
    "batch_size": (1, 200),
    "timeout_ms": (5_000, 300_000),
    "animation_wait_ms": (0, 30_000),
    "nudge_scroll_ratio": (0.0, 0.5),
    "nudge_wait_ms": (0, 30_000),
    "nudge_after_ms": (0, 30_000),
    "stability_stable_ms": (0, 30_000),
    "stability_max_wait_ms": (0, 60_000),
    "stability_interval_ms": (50, 10_000),
    "jpeg_quality": (1, 100),
    "webp_quality": (1, 100),
}

MAX_REQUIRED_SELECTORS = 5
MAX_EXTRA_SELECTORS = 10


# ---------- Per-run settings ----------
@dataclass(frozen=True)
class ScrapeSettings:
    job_mode: JobMode = "full"

    # Capacity
    concurrency: int = 5
    browser_instances: int = 2
    pages_per_browser: int = 5
    batch_size: int = 50
    timeout_ms: int = 60_000

    # Stabilization
    animation_wait_ms: int = 3_000
    nudge_scroll_ratio: float = 0.2
    nudge_wait_ms: int = 500
    nudge_after_ms: int = 500
    stability_stable_ms: int = 1_000
    stability_max_wait_ms: int = 7_000
    stability_interval_ms: int = 250

    # Image encoding
    jpeg_quality: int = 80
    webp_quality: int = 75

    # Screenshot rules
    required_selectors: Tuple[str, ...] = ()
    skip_if_missing_required_selectors: bool = False
    additional_screenshot_selectors: Tuple[str, ...] = ()
    append_cache_buster: bool = False

    @property
    def min_browsers(self) -> int:
        """Sessions needed so pool capacity covers the admission ceiling."""
        return max(1, math.ceil(self.concurrency / self.pages_per_browser))

    @property
    def effective_browser_instances(self) -> int:
        return max(self.browser_instances, self.min_browsers)

    def updated(self, **changes: Any) -> "ScrapeSettings":
        return dataclasses.replace(self, **clamp_settings(changes))

    def as_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["required_selectors"] = list(self.required_selectors)
        d["additional_screenshot_selectors"] = list(self.additional_screenshot_selectors)
        return d


def _clean_selectors(value: Any, limit: int) -> Optional[Tuple[str, ...]]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return None
    out = [s.strip() for s in value if isinstance(s, str) and s.strip()]
    return tuple(out[:limit])


def clamp_settings(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return only the valid keys from ``overrides``, numbers clamped to SETTINGS_LIMITS.
    Unknown keys and unparsable values are dropped.
    """
    out: Dict[str, Any] = {}
    for key, raw in overrides.items():
        if raw is None:
            continue
        if key == "job_mode":
            if raw in ("full", "screenshots_only"):
                out[key] = raw
        elif key in SETTINGS_LIMITS:
            lo, hi = SETTINGS_LIMITS[key]
            try:
                num = float(raw)
            except (TypeError, ValueError):
                continue
            if not math.isfinite(num):
                continue
            num = min(hi, max(lo, num))
            out[key] = num if key == "nudge_scroll_ratio" else int(num)
        elif key == "required_selectors":
            sel = _clean_selectors(raw, MAX_REQUIRED_SELECTORS)
            if sel is not None:
                out[key] = sel
        elif key == "additional_screenshot_selectors":
            sel = _clean_selectors(raw, MAX_EXTRA_SELECTORS)
            if sel is not None:
                out[key] = sel
        elif key in ("skip_if_missing_required_selectors", "append_cache_buster"):
            if isinstance(raw, bool):
                out[key] = raw
    return out


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    env: Literal["dev", "staging", "prod"]

    # Paths
    project_root: Path
    data_dir: Path
    screenshot_dir: Path
    sessions_dir: Path
    catalog_db: Path
    log_file: Path

    # Browser
    user_agent: str
    viewport_width: int
    viewport_height: int
    proxy_server: Optional[str]
    browser_slow_mo_ms: int
    browser_args_extra: Tuple[str, ...]
    page_close_timeout_ms: int
    context_recycle_after_pages: int     # rebuild a session's context after this many pages
    page_wait_timeout_ms: int            # parked checkout waiters rescan after this long
    lightweight_details: bool            # abort image/media requests on storefront pages

    # Navigation
    navigation_attempts: int
    navigation_retry_delay_ms: int       # multiplied by the attempt number

    # Failure monitor
    failure_window: int
    consecutive_failure_threshold: int
    failure_ratio_threshold: float

    # Orchestrator
    progress_every: int
    image_concurrency: int

    # Write buffer
    writer_batch_size: int
    writer_flush_interval_ms: int
    writer_max_recent: int

    # Catalog store busy-retry
    store_busy_timeout_ms: int
    store_retry_attempts: int
    store_retry_base_ms: int
    store_retry_max_ms: int

    # Object store
    object_store_url: Optional[str]      # http(s) endpoint; local filesystem when unset
    object_store_token: Optional[str]
    public_base_url: str

    # Discovery
    sitemap_url: str
    template_url_prefix: str
    incremental_threshold_ms: int

    # Default per-run settings
    default_settings: ScrapeSettings


# ---------- Loader ----------
def load_config() -> Config:
    settings = ScrapeSettings().updated(
        concurrency=getenv_int("SCRAPE_CONCURRENCY", 5),
        browser_instances=getenv_int("SCRAPE_BROWSER_INSTANCES", 2),
        pages_per_browser=getenv_int("SCRAPE_PAGES_PER_BROWSER", 5),
        batch_size=getenv_int("SCRAPE_BATCH_SIZE", 50),
        timeout_ms=getenv_int("SCRAPE_TIMEOUT_MS", 60_000),
        jpeg_quality=getenv_int("SCREENSHOT_JPEG_QUALITY", 80),
        webp_quality=getenv_int("SCREENSHOT_WEBP_QUALITY", 75),
        append_cache_buster=getenv_bool("SCREENSHOT_CACHE_BUSTER", False),
    )

    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        screenshot_dir=SCREENSHOT_DIR,
        sessions_dir=SESSIONS_DIR,
        catalog_db=Path(getenv_str("CATALOG_DB", str(CATALOG_DB))),
        log_file=LOG_FILE,

        user_agent=getenv_str(
            "SCRAPER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        viewport_width=getenv_int("VIEWPORT_WIDTH", 1440, 320, 3840),
        viewport_height=getenv_int("VIEWPORT_HEIGHT", 900, 240, 2160),
        proxy_server=getenv_str("PROXY_SERVER", "") or None,
        browser_slow_mo_ms=getenv_int("BROWSER_SLOW_MO_MS", 0, 0, 5000),
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),
        page_close_timeout_ms=getenv_int("PAGE_CLOSE_TIMEOUT_MS", 1500, 100, 10000),
        context_recycle_after_pages=getenv_int("CONTEXT_RECYCLE_AFTER_PAGES", 200, 10, 100_000),
        page_wait_timeout_ms=getenv_int("PAGE_WAIT_TIMEOUT_MS", 1000, 100, 30000),
        lightweight_details=getenv_bool("LIGHTWEIGHT_DETAILS", True),

        navigation_attempts=getenv_int("NAVIGATION_ATTEMPTS", 2, 1, 5),
        navigation_retry_delay_ms=getenv_int("NAVIGATION_RETRY_DELAY_MS", 2000, 0, 30000),

        failure_window=getenv_int("FAILURE_WINDOW", 10, 2, 1000),
        consecutive_failure_threshold=getenv_int("CONSECUTIVE_FAILURE_THRESHOLD", 5, 1, 1000),
        failure_ratio_threshold=getenv_float("FAILURE_RATIO_THRESHOLD", 0.8, 0.05, 1.0),

        progress_every=getenv_int("PROGRESS_EVERY", 5, 1, 1000),
        image_concurrency=getenv_int("IMAGE_CONCURRENCY", 2, 1, 32),

        writer_batch_size=getenv_int("WRITER_BATCH_SIZE", 25, 5, 50),
        writer_flush_interval_ms=getenv_int("WRITER_FLUSH_INTERVAL_MS", 750, 10, 60000),
        writer_max_recent=getenv_int("WRITER_MAX_RECENT", 250, 10, 5000),

        store_busy_timeout_ms=getenv_int("STORE_BUSY_TIMEOUT_MS", 30000, 0, 120000),
        store_retry_attempts=getenv_int("STORE_RETRY_ATTEMPTS", 10, 1, 50),
        store_retry_base_ms=getenv_int("STORE_RETRY_BASE_MS", 50, 1, 5000),
        store_retry_max_ms=getenv_int("STORE_RETRY_MAX_MS", 2000, 10, 60000),

        object_store_url=getenv_str("OBJECT_STORE_URL", "") or None,
        object_store_token=getenv_str("OBJECT_STORE_TOKEN", "") or None,
        public_base_url=getenv_str("PUBLIC_BASE_URL", SCREENSHOT_DIR.as_uri()),

        sitemap_url=getenv_str("SITEMAP_URL", "https://templates.webflow.com/sitemap.xml"),
        template_url_prefix=getenv_str("TEMPLATE_URL_PREFIX", "https://templates.webflow.com/html/"),
        incremental_threshold_ms=getenv_int("INCREMENTAL_THRESHOLD_MS", 60_000, 0, 86_400_000),

        default_settings=settings,
    )
    return cfg
