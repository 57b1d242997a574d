from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar
from urllib.parse import urlparse

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Slug of the unit the current task is working on; read by log filters.
CURRENT_UNIT: ContextVar[Optional[str]] = ContextVar("CURRENT_UNIT", default=None)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

def init_logging(log_path: Path, level: int = logging.INFO) -> None:
    """
    Simple file+console logger for scripts that do not use LoggingExtension.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "%(levelname)s %(asctime)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    handlers = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler()
    ]
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers)

# ========== Exceptions & classification ==========

class TransientRemoteError(Exception):
    """Navigation or in-page script timed out against the target site."""

class StoreBusyError(Exception):
    """Catalog store stayed busy/locked after every retry attempt."""

class SessionFatalError(Exception):
    """Automation engine connection lost and could not be replaced."""

class ExtractionError(Exception):
    """Required data was missing from the page."""

class ScrapeStopped(Exception):
    """Raised once stop() has been requested; the unit goes back to remaining."""


_TIMEOUT_PAT = re.compile(r"timeout|timed out", re.IGNORECASE)

_DRIVER_DISCONNECT_HINTS = (
    "connection closed while reading from the driver",
    "browser has been closed",
    "target page, context or browser has been closed",
    "playwright connection closed",
    "pipe closed by peer",
    "browser closed",
    "connection closed",
)

_BUSY_HINTS = ("database is locked", "database is busy", "sqlite_busy", "sqlite_locked")


def _exc_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (TransientRemoteError, asyncio.TimeoutError, TimeoutError)):
        return True
    return _TIMEOUT_PAT.search(_exc_text(exc)) is not None


def is_driver_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, SessionFatalError):
        return True
    low = _exc_text(exc).lower()
    return any(h in low for h in _DRIVER_DISCONNECT_HINTS)


def is_busy_error(exc: BaseException) -> bool:
    if isinstance(exc, StoreBusyError):
        return True
    low = str(exc).lower()
    return any(h in low for h in _BUSY_HINTS)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    initial_delay_ms: int,
    max_delay_ms: int,
    jitter_ms: int,
    retry_on: Callable[[BaseException], bool],
) -> T:
    """Run ``fn`` under tenacity with exponential backoff + jitter; re-raises the last error."""
    async for attempt in AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(
            initial=initial_delay_ms / 1000.0,
            max=max_delay_ms / 1000.0,
            jitter=jitter_ms / 1000.0,
        ),
        retry=retry_if_exception(retry_on),
    ):
        with attempt:
            return await fn()
    raise RuntimeError("unreachable")  # pragma: no cover

# ========== URL / slug helpers ==========

def extract_slug(url: str) -> str:
    """Last non-empty path segment of a storefront URL."""
    parts = url.split("?")[0].split("#")[0].split("/")
    if parts and parts[-1]:
        return parts[-1]
    if len(parts) > 1 and parts[-2]:
        return parts[-2]
    return "unknown"


def slugify(text: str, max_len: int = 80) -> str:
    s = (text or "").strip().lower()
    s = re.sub(r"&", " and ", s)
    s = re.sub(r"[^a-z0-9]+", "-", s).strip("-")
    return s[:max_len] or "item"


def extract_domain_slug(live_preview_url: str) -> Optional[str]:
    """
    "https://template-name.webflow.io" -> "template-name"; other hosts keep the full hostname.
    """
    try:
        host = urlparse(live_preview_url).hostname
    except ValueError:
        return None
    if not host:
        return None
    if host.endswith(".webflow.io"):
        return host[: -len(".webflow.io")]
    return host


def same_origin(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return (pa.scheme, pa.netloc) == (pb.scheme, pb.netloc)

# ========== Time helpers ==========

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)

# ========== Playwright helpers ==========

async def try_close_page(page: Any, timeout_ms: int = 1500) -> None:
    """
    Best-effort, bounded-time page close so a wedged renderer cannot hold a worker.
    """
    if page is None:
        return
    try:
        await asyncio.wait_for(page.close(), timeout=max(0.1, (timeout_ms or 1) / 1000.0))
    except Exception as e:
        logger.debug("[pool] page close failed: %s", e)
