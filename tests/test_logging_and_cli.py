import logging

import pytest

import run_scrape
from gallery_extensions import output_paths
from gallery_extensions.logging import LoggingExtension, log_event
from gallery_scraper import events as ev
from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.events import Event, EventBus
from gallery_scraper.utils import CURRENT_UNIT


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


@pytest.fixture
def session_dirs(tmp_path, monkeypatch):
    monkeypatch.setattr(output_paths, "SESSION_LOG_ROOT", tmp_path / "logs")
    monkeypatch.setattr(output_paths, "SESSIONS_DIR", tmp_path / "sessions")
    return tmp_path


def test_session_log_keeps_only_its_own_records(session_dirs, restore_root_logging):
    ext = LoggingExtension(session_dirs, global_level=logging.INFO)
    ext.get_session_logger("7")
    log = logging.getLogger("gallery_scraper.test")

    token = ext.set_session_context("7")
    unit_token = CURRENT_UNIT.set("alpha")
    log.info("inside the session")
    CURRENT_UNIT.reset(unit_token)
    ext.reset_session_context(token)
    log.info("outside the session")
    logging.getLogger("session.7").info("direct to the session logger")
    ext.close()

    text = (session_dirs / "logs" / "session-7.log").read_text(encoding="utf-8")
    assert "inside the session" in text
    assert "[alpha]" in text
    assert "outside the session" not in text
    assert "direct to the session logger" in text


def test_session_scope_routes_events_then_closes_file(session_dirs, restore_root_logging):
    ext = LoggingExtension(session_dirs, global_level=logging.DEBUG)
    with ext.session_scope("9"):
        log_event(Event(ev.BATCH_START, {"batch": 1, "total_batches": 3, "size": 50}))
        log_event(Event(ev.TIMEOUT_PAUSED, {"reason": "5 consecutive failures"}))
        log_event(Event(ev.STATE_CHANGE, {"status": "running", "settings": {}}))
    log_event(Event(ev.BATCH_START, {"batch": 2, "total_batches": 3, "size": 50}))

    assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)
    text = (session_dirs / "logs" / "session-9.log").read_text(encoding="utf-8")
    assert "[batch] 1/3 started (50 urls)" in text
    assert "WARNING" in text and "5 consecutive failures" in text
    assert "settings updated while running" in text
    assert "[batch] 2/3" not in text
    ext.close()


@pytest.mark.asyncio
async def test_attached_events_reach_the_session_file(session_dirs, restore_root_logging):
    ext = LoggingExtension(session_dirs, global_level=logging.INFO)
    with ext.session_scope("10"):
        bus = EventBus()
        ext.attach_events(bus)
        bus.emit(ev.PROGRESS, processed=5, total=10, percent=50.0, successful=4, failed=1, skipped=0, paused=1)
        await bus.close()

    text = (session_dirs / "logs" / "session-10.log").read_text(encoding="utf-8")
    assert "[progress] 5/10 (50.0%) ok=4 failed=1 skipped=0 paused=1" in text


def test_session_state_path_layout(session_dirs):
    path = output_paths.session_state_path("run-1")
    assert path == session_dirs / "sessions" / "run-1" / "final_state.json"
    assert path.parent.is_dir()


def test_parse_args_and_overrides():
    args = run_scrape._parse_args([
        "--urls", "urls.txt", "--concurrency", "8", "--browsers", "2", "--screenshots-only",
        "--required-selector", ".hero", "--required-selector", ".nav", "--exclude-selector", ".chat",
    ])
    assert args.incremental is True
    overrides = run_scrape._settings_overrides(args)
    assert overrides == {
        "concurrency": 8,
        "browser_instances": 2,
        "job_mode": "screenshots_only",
        "required_selectors": [".hero", ".nav"],
        "skip_if_missing_required_selectors": True,
        "additional_screenshot_selectors": [".chat"],
    }

    args = run_scrape._parse_args(["--resume"])
    assert args.resume == 0
    args = run_scrape._parse_args(["--sitemap", "--all", "--limit", "5"])
    assert args.sitemap == "" and args.incremental is False and args.limit == 5

    with pytest.raises(SystemExit):
        run_scrape._parse_args(["--urls", "a.txt", "--resume", "3"])


@pytest.mark.asyncio
async def test_blacklist_commands_touch_only_the_catalog(tmp_path, monkeypatch, restore_root_logging):
    db = tmp_path / "catalog.sqlite3"
    monkeypatch.setenv("CATALOG_DB", str(db))

    assert await run_scrape.main_async(["--blacklist", "https://spam-site.webflow.io"]) == 0
    store = CatalogStore(db)
    try:
        assert await store.blacklist_set() == {"spam-site"}
    finally:
        store.close()

    assert await run_scrape.main_async(["--unblacklist", "spam-site"]) == 0
    assert await run_scrape.main_async(["--unblacklist", "spam-site"]) == 1


@pytest.mark.asyncio
async def test_empty_url_file_exits_cleanly(tmp_path, monkeypatch, restore_root_logging):
    monkeypatch.setenv("CATALOG_DB", str(tmp_path / "catalog.sqlite3"))
    urls = tmp_path / "urls.txt"
    urls.write_text("# nothing yet\n", encoding="utf-8")
    assert await run_scrape.main_async(["--urls", str(urls)]) == 0
