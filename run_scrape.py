from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from gallery_components.url_source import discover_urls, load_url_file
from gallery_extensions.checkpoint import SessionCheckpoint
from gallery_extensions.logging import LoggingExtension
from gallery_extensions.output_paths import session_state_path
from gallery_extensions.screenshot_rules import ScreenshotRules
from gallery_scraper import events as ev
from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.config import LOG_DIR, Config, ScrapeSettings, load_config
from gallery_scraper.events import Event, EventBus
from gallery_scraper.failure_monitor import FailureRateMonitor
from gallery_scraper.object_store import object_store_from_config
from gallery_scraper.orchestrator import BatchOrchestrator
from gallery_scraper.session_pool import SessionPool
from gallery_scraper.template_scrape import TemplateScraper
from gallery_scraper.write_buffer import TemplateWriteBuffer

log = logging.getLogger("run_scrape")


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Batch scrape template gallery pages into the catalog")

    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--urls", type=Path, help="File with one storefront URL per line")
    src.add_argument("--sitemap", nargs="?", const="", metavar="URL", help="Discover URLs from the sitemap (default from config)")
    src.add_argument("--resume", nargs="?", const=0, type=int, metavar="SESSION_ID",
                     help="Resume a session (default: the newest interrupted one)")
    src.add_argument("--blacklist", metavar="LIVE_URL", help="Blacklist a live preview domain and exit")
    src.add_argument("--unblacklist", metavar="DOMAIN_SLUG", help="Remove a blacklist entry and exit")

    p.add_argument("--incremental", dest="incremental", action="store_true", default=True,
                   help="With --sitemap: only new or updated templates (default)")
    p.add_argument("--all", dest="incremental", action="store_false", help="With --sitemap: every template")
    p.add_argument("--limit", type=int, default=None, help="Optional cap on the number of URLs")

    # Per-run settings
    p.add_argument("--concurrency", type=int, default=None)
    p.add_argument("--browsers", type=int, default=None, help="Browser instances")
    p.add_argument("--pages-per-browser", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--timeout-ms", type=int, default=None)
    p.add_argument("--screenshots-only", action="store_true", help="Only refresh screenshots of catalog templates")
    p.add_argument("--required-selector", action="append", default=None,
                   help="Skip templates missing all of these selectors (repeatable)")
    p.add_argument("--exclude-selector", action="append", default=None,
                   help="Extra elements to remove before the screenshot (repeatable)")
    p.add_argument("--cache-buster", action="store_true", default=None, help="Append ?v=<ms> to screenshot URLs")

    p.add_argument("--on-auto-pause", choices=["stop", "replay"], default="stop",
                   help="stop: end the run (resumable); replay: retry the timed-out URLs after --replay-delay")
    p.add_argument("--replay-delay", type=float, default=60.0, help="Seconds before replaying timed-out URLs")

    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    return p.parse_args(argv)


# ----------------------------
# Small helpers
# ----------------------------

def _settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "concurrency": args.concurrency,
        "browser_instances": args.browsers,
        "pages_per_browser": args.pages_per_browser,
        "batch_size": args.batch_size,
        "timeout_ms": args.timeout_ms,
        "append_cache_buster": args.cache_buster,
    }
    if args.screenshots_only:
        overrides["job_mode"] = "screenshots_only"
    if args.required_selector:
        overrides["required_selectors"] = args.required_selector
        overrides["skip_if_missing_required_selectors"] = True
    if args.exclude_selector:
        overrides["additional_screenshot_selectors"] = args.exclude_selector
    return {k: v for k, v in overrides.items() if v is not None}


async def _resolve_work(
    args: argparse.Namespace, cfg: Config, store: CatalogStore, checkpoint: SessionCheckpoint
) -> Tuple[List[str], Optional[int], Dict[str, Any]]:
    """(urls, session_id to resume, settings stored with that session)."""
    if args.resume is not None:
        session = await checkpoint.get_session(args.resume) if args.resume else await checkpoint.interrupted_session()
        if session is None:
            raise SystemExit("No session to resume")
        sid = int(session["id"])
        urls = await checkpoint.resume_urls(sid)
        stored = json.loads(session.get("config") or "{}")
        return urls, sid, stored
    if args.urls:
        return load_url_file(args.urls, limit=args.limit), None, {}
    if args.sitemap:
        cfg = dataclasses.replace(cfg, sitemap_url=args.sitemap)
    return await discover_urls(cfg, store, incremental=args.incremental, limit=args.limit), None, {}


def _install_signal_handlers(orch: BatchOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # not available on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, orch.stop)


# ----------------------------
# Main
# ----------------------------

async def main_async(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    log_ext = LoggingExtension(LOG_DIR, global_level=level, per_session_level=level)

    cfg = load_config()
    store = CatalogStore.from_config(cfg)

    try:
        if args.blacklist:
            row = await store.blacklist_template(args.blacklist, reason="manual_skip")
            log.info("Blacklisted %s (row=%s)", args.blacklist, row)
            return 0
        if args.unblacklist:
            removed = await store.unblacklist_template(args.unblacklist)
            log.info("Unblacklisted %s: %s", args.unblacklist, removed)
            return 0 if removed else 1

        checkpoint = SessionCheckpoint(store)
        urls, session_id, stored = await _resolve_work(args, cfg, store, checkpoint)
        if not urls:
            log.info("Nothing to scrape")
            if session_id is not None:
                await store.execute("UPDATE scrape_sessions SET status = 'completed' WHERE id = ?", (session_id,))
            return 0

        settings: ScrapeSettings = cfg.default_settings.updated(**stored).updated(**_settings_overrides(args))
        session_key = str(session_id) if session_id else datetime.now().strftime("run-%Y%m%d-%H%M%S")
        with log_ext.session_scope(session_key):
            return await _run(args, cfg, settings, store, checkpoint, urls, session_id, session_key, log_ext)
    finally:
        store.close()
        log_ext.close()


async def _run(args, cfg, settings, store, checkpoint, urls, session_id, session_key, log_ext) -> int:
    events = EventBus()
    log_ext.attach_events(events)
    writer = TemplateWriteBuffer.from_config(store, cfg)
    objects = object_store_from_config(cfg)
    scraper = TemplateScraper(cfg, store, writer, objects, ScreenshotRules(store))
    pool = SessionPool(cfg, settings)
    orch = BatchOrchestrator(
        settings,
        pool,
        scraper,
        events=events,
        monitor=FailureRateMonitor(
            cfg.failure_window, cfg.consecutive_failure_threshold, cfg.failure_ratio_threshold
        ),
        checkpoint=checkpoint,
        progress_every=cfg.progress_every,
    )

    async def _on_auto_pause(event: Event) -> None:
        if event.type != ev.TIMEOUT_PAUSED:
            return
        if args.on_auto_pause == "stop":
            log.warning("Auto-paused; stopping. Resume later with --resume")
            orch.stop()
            return
        log.warning("Auto-paused; replaying timed-out urls in %.0fs", args.replay_delay)
        await asyncio.sleep(args.replay_delay)
        orch.resume_from_auto_pause()

    events.subscribe(_on_auto_pause)
    _install_signal_handlers(orch)

    log.info("Scraping %d urls (session=%s mode=%s)", len(urls), session_id or "new", settings.job_mode)
    try:
        await pool.start()
        state = await orch.run(urls, session_id=session_id)
    finally:
        await pool.shutdown()
        await writer.close()
        await objects.aclose()
        await events.close()

    session_state_path(session_key).write_text(json.dumps(state.as_dict(), indent=2), encoding="utf-8")
    log.info(
        "Run %s: %d/%d processed, %d ok, %d failed, %d skipped, %d remaining, %d paused",
        state.status, state.processed, state.total, state.successful, state.failed, state.skipped,
        len(state.remaining), len(state.paused),
    )
    return 0 if state.status == "completed" else 2


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
