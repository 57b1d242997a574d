from __future__ import annotations
import contextlib
import logging
from pathlib import Path
from typing import Dict, Iterator, Optional
from contextvars import ContextVar

from gallery_scraper import events as ev
from gallery_scraper.events import Event, EventBus, Subscription
from gallery_scraper.utils import CURRENT_UNIT

from .output_paths import session_log_path

# Which scrape session the running task belongs to.
_CURRENT_SESSION: ContextVar[Optional[str]] = ContextVar("_CURRENT_SESSION", default=None)

SESSION_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(unit)s] %(message)s"
CONSOLE_FORMAT = "%(levelname)s [%(unit)s] %(message)s"

event_log = logging.getLogger("gallery_scraper.events")


class _SessionFilter(logging.Filter):
    """
    Keep records emitted while ``session_key`` is the active session, plus
    anything sent straight to the ``session.<key>`` logger.
    """
    def __init__(self, session_key: str) -> None:
        super().__init__()
        self.session_key = str(session_key)

    def filter(self, record: logging.LogRecord) -> bool:
        if _CURRENT_SESSION.get() == self.session_key:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"session.{self.session_key}")


class _UnitFilter(logging.Filter):
    """Stamp every record with the slug of the unit being scraped (``-`` outside a worker)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.unit = CURRENT_UNIT.get() or "-"
        return True


def log_event(event: Event) -> None:
    """EventBus subscriber: one log line per orchestrator event worth reading."""
    d = event.data
    if event.type == ev.PROGRESS:
        event_log.info(
            "[progress] %s/%s (%.1f%%) ok=%s failed=%s skipped=%s paused=%s",
            d.get("processed"), d.get("total"), d.get("percent", 0.0),
            d.get("successful"), d.get("failed"), d.get("skipped"), d.get("paused"),
        )
    elif event.type == ev.BATCH_START:
        event_log.info("[batch] %s/%s started (%s urls)", d.get("batch"), d.get("total_batches"), d.get("size"))
    elif event.type == ev.BATCH_COMPLETE:
        event_log.info(
            "[batch] %s complete ok=%s failed=%s skipped=%s",
            d.get("batch"), d.get("successful"), d.get("failed"), d.get("skipped"),
        )
    elif event.type in (ev.PAUSED, ev.TIMEOUT_PAUSED):
        event_log.warning("[%s] %s", event.type, d.get("reason"))
    elif event.type == ev.STATE_CHANGE and "settings" in d:
        event_log.info("[state] settings updated while %s", d.get("status"))
    elif event.type == ev.STATE_CHANGE:
        event_log.info("[state] %s -> %s", d.get("previous"), d.get("status"))
    elif event.type == ev.ERROR and d.get("scope") == "session":
        event_log.error("[error] %s", d.get("message"))
    elif event.type == ev.TEMPLATE_PHASE:
        event_log.debug("[phase] %s -> %s", d.get("slug"), d.get("phase"))


class LoggingExtension:
    """
    Console logging plus one log file per scrape session.

    Session files hang off the root logger and keep only the records produced
    while that session is the active context, so every module's logger ends
    up in the right file without being passed a session handle.
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        *,
        global_level: int = logging.INFO,
        per_session_level: Optional[int] = None,
    ) -> None:
        self.log_dir = log_dir
        self.global_level = global_level
        self.per_session_level = per_session_level if per_session_level is not None else global_level
        self._session_handlers: Dict[str, logging.Handler] = {}

        self._install_console(self.global_level)

        # Root stays permissive; handler levels do the filtering.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(_UnitFilter())
        ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root.addHandler(ch)

    # ---------------- Session logger ----------------

    def get_session_logger(self, session_key: str) -> logging.Logger:
        session_key = str(session_key)
        if session_key not in self._session_handlers:
            fh = logging.FileHandler(session_log_path(session_key), mode="a", encoding="utf-8")
            fh.setLevel(self.per_session_level)
            fh.addFilter(_SessionFilter(session_key))
            fh.addFilter(_UnitFilter())
            fh.setFormatter(logging.Formatter(fmt=SESSION_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
            logging.getLogger().addHandler(fh)
            self._session_handlers[session_key] = fh

        logger = logging.getLogger(f"session.{session_key}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    def attach_events(self, bus: EventBus) -> Subscription:
        """Log orchestrator events; subscribe inside session_scope() so they land in the session file."""
        return bus.subscribe(log_event)

    # ---------------- Context helpers ----------------

    def set_session_context(self, session_key: str):
        """Returns a token for reset_session_context()."""
        return _CURRENT_SESSION.set(str(session_key))

    def reset_session_context(self, token) -> None:
        try:
            _CURRENT_SESSION.reset(token)
        except ValueError:
            # token from another context
            _CURRENT_SESSION.set(None)

    @contextlib.contextmanager
    def session_scope(self, session_key: str) -> Iterator[logging.Logger]:
        """Open the session's log file and make it the active session until exit."""
        logger = self.get_session_logger(session_key)
        token = self.set_session_context(session_key)
        try:
            yield logger
        finally:
            self.reset_session_context(token)
            self.close_session(session_key)

    # ---------------- Cleanup ----------------

    def close_session(self, session_key: str) -> None:
        fh = self._session_handlers.pop(str(session_key), None)
        if fh is None:
            return
        logging.getLogger().removeHandler(fh)
        fh.flush()
        fh.close()

    def close(self) -> None:
        for key in list(self._session_handlers):
            self.close_session(key)
