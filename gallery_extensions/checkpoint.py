from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.utils import now_iso

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Session / batch / unit checkpoints in the catalog database
# ---------------------------------------------------------------------------

RESUMABLE_STATUSES = ("running", "paused", "timeout_paused")
TERMINAL_UNIT_STATUSES = ("completed", "failed", "skipped")
PARKED_UNIT_STATUS = "paused"

_COUNTERS = ("processed", "successful", "failed", "skipped")


def _loads(text: Optional[str], default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        logger.warning("[checkpoint] unreadable JSON column, using default")
        return default


class SessionCheckpoint:
    """
    Persists a scrape session so an interrupted process can pick up where it
    left off: session row, one row per batch, one row per unit and a resume
    point holding the remaining and paused URL sets plus counters.
    """

    def __init__(self, store: CatalogStore) -> None:
        self.store = store

    # ---------------------- Sessions ----------------------

    async def start_session(
        self,
        urls: Sequence[str],
        settings: Mapping[str, Any],
        *,
        session_type: str = "full",
        batch_size: int = 50,
    ) -> int:
        now = now_iso()
        res = await self.store.execute(
            "INSERT INTO scrape_sessions (session_type, status, total_templates, batch_size, total_batches, "
            "sitemap_snapshot, config, started_at) VALUES (?, 'running', ?, ?, ?, ?, ?, ?)",
            (
                session_type,
                len(urls),
                batch_size,
                math.ceil(len(urls) / max(1, batch_size)),
                json.dumps(list(urls)),
                json.dumps(dict(settings)),
                now,
            ),
        )
        session_id = int(res.inserted_id or 0)
        logger.info("[checkpoint] session %d started with %d urls", session_id, len(urls))
        return session_id

    async def mark_resumed(self, session_id: int) -> None:
        await self.store.execute(
            "UPDATE scrape_sessions SET status = 'running', resumed_at = ?, error_message = NULL WHERE id = ?",
            (now_iso(), session_id),
        )

    async def update_session(self, session_id: int, state: Any, *, status: Optional[str] = None) -> None:
        """Copy the live counters onto the session row; ``status`` also stamps the matching timestamp."""
        sets = [
            "processed_templates = ?", "successful_templates = ?", "failed_templates = ?",
            "skipped_templates = ?", "total_templates = ?", "current_batch_number = ?",
        ]
        params: List[Any] = [
            state.processed, state.successful, state.failed, state.skipped, state.total, state.batch_number,
        ]
        if status is not None:
            sets.append("status = ?")
            params.append(status)
            if status in ("paused", "timeout_paused"):
                sets.append("paused_at = ?")
                params.append(now_iso())
            elif status in ("completed", "stopped", "failed"):
                sets.append("completed_at = ?")
                params.append(now_iso())
        if getattr(state, "error", None):
            sets.append("error_message = ?")
            params.append(state.error)
        params.append(session_id)
        await self.store.execute(f"UPDATE scrape_sessions SET {', '.join(sets)} WHERE id = ?", params)

    async def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        row = await self.store.query_one("SELECT * FROM scrape_sessions WHERE id = ?", (session_id,))
        return dict(row) if row is not None else None

    async def interrupted_session(self) -> Optional[Dict[str, Any]]:
        """Newest session the process left unfinished."""
        row = await self.store.query_one(
            f"SELECT * FROM scrape_sessions WHERE status IN ({', '.join('?' for _ in RESUMABLE_STATUSES)}) "
            "ORDER BY id DESC LIMIT 1",
            RESUMABLE_STATUSES,
        )
        return dict(row) if row is not None else None

    # ---------------------- Batches & units ----------------------

    async def start_batch(self, session_id: int, batch_number: int, urls: Sequence[str]) -> int:
        async def _write(tx) -> int:
            now = now_iso()
            res = await tx.execute(
                "INSERT INTO scrape_batches (session_id, batch_number, status, total_templates, started_at) "
                "VALUES (?, ?, 'running', ?, ?) "
                "ON CONFLICT(session_id, batch_number) DO UPDATE SET status = 'running', "
                "total_templates = excluded.total_templates, started_at = excluded.started_at",
                (session_id, batch_number, len(urls), now),
            )
            row = await tx.query_one(
                "SELECT id FROM scrape_batches WHERE session_id = ? AND batch_number = ?",
                (session_id, batch_number),
            )
            batch_id = int(row["id"]) if row is not None else int(res.inserted_id or 0)
            for url in urls:
                await tx.execute(
                    "INSERT INTO batch_templates (batch_id, session_id, template_url, status) "
                    "VALUES (?, ?, ?, 'pending')",
                    (batch_id, session_id, url),
                )
            return batch_id

        return await self.store.run_in_transaction(_write)

    async def record_unit(self, batch_id: int, unit: Any) -> None:
        status = PARKED_UNIT_STATUS if getattr(unit, "parked", False) else unit.phase
        terminal = status in TERMINAL_UNIT_STATUSES
        await self.store.execute(
            "UPDATE batch_templates SET status = ?, template_slug = ?, template_name = ?, live_preview_url = ?, "
            "phase_started_at = ?, phase_duration_seconds = ?, error_message = ?, result_template_id = ?, "
            "completed_at = ? WHERE batch_id = ? AND template_url = ?",
            (
                status,
                unit.slug,
                unit.name,
                unit.live_preview_url,
                unit.phase_started_at,
                unit.phase_elapsed_s(),
                unit.error,
                unit.row_id,
                now_iso() if terminal else None,
                batch_id,
                unit.url,
            ),
        )

    async def complete_batch(self, batch_id: int, counts: Mapping[str, int], *, status: str = "completed") -> None:
        await self.store.execute(
            "UPDATE scrape_batches SET status = ?, processed_templates = ?, successful_templates = ?, "
            "failed_templates = ?, skipped_templates = ?, completed_at = ? WHERE id = ?",
            (
                status,
                counts.get("processed", 0),
                counts.get("successful", 0),
                counts.get("failed", 0),
                counts.get("skipped", 0),
                now_iso(),
                batch_id,
            ),
        )

    async def batch_units(self, batch_id: int) -> List[Dict[str, Any]]:
        rows = await self.store.query(
            "SELECT * FROM batch_templates WHERE batch_id = ? ORDER BY id", (batch_id,)
        )
        return [dict(r) for r in rows]

    # ---------------------- Resume points ----------------------

    async def save_resume_point(self, session_id: int, state: Any, *, last_batch_id: Optional[int] = None) -> None:
        data = {k: getattr(state, k) for k in _COUNTERS}
        data["total"] = state.total
        data["batch_number"] = state.batch_number
        data["paused_urls"] = list(state.paused)
        await self.store.execute(
            "INSERT INTO session_resume_points (session_id, last_completed_batch_id, remaining_urls, "
            "checkpoint_data, updated_at) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(session_id) DO UPDATE SET "
            "last_completed_batch_id = COALESCE(excluded.last_completed_batch_id, last_completed_batch_id), "
            "remaining_urls = excluded.remaining_urls, checkpoint_data = excluded.checkpoint_data, "
            "updated_at = excluded.updated_at",
            (session_id, last_batch_id, json.dumps(list(state.remaining)), json.dumps(data), now_iso()),
        )

    async def load_progress(self, session_id: int) -> Dict[str, int]:
        row = await self.store.query_one(
            "SELECT checkpoint_data FROM session_resume_points WHERE session_id = ?", (session_id,)
        )
        data = _loads(row["checkpoint_data"], {}) if row is not None else {}
        out = {k: int(data.get(k, 0)) for k in _COUNTERS}
        out["batch_number"] = int(data.get("batch_number", 0))
        out["paused"] = len(data.get("paused_urls", []))
        return out

    async def resume_urls(self, session_id: int) -> List[str]:
        """
        remaining + paused from the resume point; without one, the session's
        URL snapshot minus every unit already recorded as terminal.
        """
        row = await self.store.query_one(
            "SELECT remaining_urls, checkpoint_data FROM session_resume_points WHERE session_id = ?",
            (session_id,),
        )
        if row is not None:
            remaining = _loads(row["remaining_urls"], [])
            paused = _loads(row["checkpoint_data"], {}).get("paused_urls", [])
            out: List[str] = []
            for url in [*remaining, *paused]:
                if url not in out:
                    out.append(url)
            return out

        session = await self.get_session(session_id)
        if session is None:
            return []
        snapshot = _loads(session.get("sitemap_snapshot"), [])
        done_rows = await self.store.query(
            f"SELECT template_url FROM batch_templates WHERE session_id = ? AND status IN "
            f"({', '.join('?' for _ in TERMINAL_UNIT_STATUSES)})",
            (session_id, *TERMINAL_UNIT_STATUSES),
        )
        done = {r["template_url"] for r in done_rows}
        return [u for u in snapshot if u not in done]
