from __future__ import annotations

from pathlib import Path

from gallery_scraper.config import LOG_DIR, SESSIONS_DIR

# Base directories
SESSION_LOG_ROOT = LOG_DIR / "sessions"


def ensure_session_dirs(session_key: str) -> dict[str, Path]:
    """
    Ensure per-session folders exist.
    Returns a mapping for the session's logs and exported state.
    """
    dirs = {
        "logs": SESSION_LOG_ROOT,
        "state": SESSIONS_DIR / str(session_key),
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def session_log_path(session_key: str) -> Path:
    return ensure_session_dirs(session_key)["logs"] / f"session-{session_key}.log"


def session_state_path(session_key: str) -> Path:
    return ensure_session_dirs(session_key)["state"] / "final_state.json"
