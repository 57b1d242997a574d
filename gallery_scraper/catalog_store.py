from __future__ import annotations

import asyncio
import itertools
import logging
import sqlite3
import threading
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from .extraction import TemplateRecord
from .utils import StoreBusyError, extract_domain_slug, is_busy_error, now_iso, retry_async, slugify

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    author_id TEXT,
    author_name TEXT,
    author_avatar TEXT,
    storefront_url TEXT,
    live_preview_url TEXT,
    designer_preview_url TEXT,
    price TEXT,
    short_description TEXT,
    long_description TEXT,
    primary_category TEXT,
    gallery_subcategories TEXT,
    screenshot_path TEXT,
    screenshot_thumbnail_path TEXT,
    is_featured INTEGER DEFAULT 0,
    is_cms INTEGER DEFAULT 0,
    is_ecommerce INTEGER DEFAULT 0,
    screenshot_url TEXT,
    is_alternate_homepage INTEGER DEFAULT 0,
    alternate_homepage_path TEXT,
    publish_date TEXT,
    scraped_at TEXT,
    updated_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS subcategories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    display_name TEXT
);

CREATE TABLE IF NOT EXISTS styles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    display_name TEXT
);

CREATE TABLE IF NOT EXISTS features (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    display_name TEXT,
    icon_type TEXT
);

CREATE TABLE IF NOT EXISTS template_subcategories (
    template_id INTEGER NOT NULL REFERENCES templates(id) ON DELETE CASCADE,
    subcategory_id INTEGER NOT NULL REFERENCES subcategories(id) ON DELETE CASCADE,
    PRIMARY KEY (template_id, subcategory_id)
);

CREATE TABLE IF NOT EXISTS template_styles (
    template_id INTEGER NOT NULL REFERENCES templates(id) ON DELETE CASCADE,
    style_id INTEGER NOT NULL REFERENCES styles(id) ON DELETE CASCADE,
    PRIMARY KEY (template_id, style_id)
);

CREATE TABLE IF NOT EXISTS template_features (
    template_id INTEGER NOT NULL REFERENCES templates(id) ON DELETE CASCADE,
    feature_id INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    PRIMARY KEY (template_id, feature_id)
);

CREATE TABLE IF NOT EXISTS scrape_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_type TEXT NOT NULL,
    status TEXT NOT NULL,
    total_templates INTEGER DEFAULT 0,
    processed_templates INTEGER DEFAULT 0,
    successful_templates INTEGER DEFAULT 0,
    failed_templates INTEGER DEFAULT 0,
    skipped_templates INTEGER DEFAULT 0,
    batch_size INTEGER,
    total_batches INTEGER DEFAULT 0,
    current_batch_number INTEGER DEFAULT 0,
    sitemap_snapshot TEXT,
    config TEXT,
    error_message TEXT,
    started_at TEXT,
    paused_at TEXT,
    resumed_at TEXT,
    completed_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS scrape_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL REFERENCES scrape_sessions(id) ON DELETE CASCADE,
    batch_number INTEGER NOT NULL,
    status TEXT NOT NULL,
    total_templates INTEGER DEFAULT 0,
    processed_templates INTEGER DEFAULT 0,
    successful_templates INTEGER DEFAULT 0,
    failed_templates INTEGER DEFAULT 0,
    skipped_templates INTEGER DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    UNIQUE (session_id, batch_number)
);

CREATE TABLE IF NOT EXISTS batch_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER NOT NULL REFERENCES scrape_batches(id) ON DELETE CASCADE,
    session_id INTEGER NOT NULL REFERENCES scrape_sessions(id) ON DELETE CASCADE,
    template_url TEXT NOT NULL,
    template_slug TEXT,
    template_name TEXT,
    live_preview_url TEXT,
    status TEXT NOT NULL,
    phase_started_at TEXT,
    phase_duration_seconds REAL,
    retry_count INTEGER DEFAULT 0,
    error_message TEXT,
    result_template_id INTEGER,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS session_resume_points (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL UNIQUE REFERENCES scrape_sessions(id) ON DELETE CASCADE,
    last_completed_batch_id INTEGER,
    remaining_urls TEXT,
    checkpoint_data TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS template_blacklist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain_slug TEXT NOT NULL UNIQUE,
    storefront_url TEXT,
    reason TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS featured_authors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_id TEXT NOT NULL UNIQUE,
    author_name TEXT,
    is_active INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS screenshot_exclusions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    selector TEXT NOT NULL,
    selector_type TEXT DEFAULT 'selector',
    author_id TEXT,
    is_active INTEGER DEFAULT 1,
    UNIQUE (selector, author_id)
);

CREATE INDEX IF NOT EXISTS idx_batch_templates_session ON batch_templates(session_id, status);
CREATE INDEX IF NOT EXISTS idx_scrape_sessions_status ON scrape_sessions(status);
"""

_TEMPLATE_COLUMNS = (
    "template_id", "name", "slug", "author_id", "author_name", "author_avatar",
    "storefront_url", "live_preview_url", "designer_preview_url", "price",
    "short_description", "long_description", "primary_category", "gallery_subcategories",
    "screenshot_path", "is_featured", "is_cms", "is_ecommerce", "screenshot_url",
    "is_alternate_homepage", "alternate_homepage_path", "publish_date", "scraped_at", "updated_at",
)

# screenshot_path is only overwritten when the new run produced one
_UPSERT_TEMPLATE_SQL = (
    f"INSERT INTO templates ({', '.join(_TEMPLATE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _TEMPLATE_COLUMNS)}) "
    "ON CONFLICT(template_id) DO UPDATE SET "
    + ", ".join(
        f"{c} = COALESCE(excluded.{c}, templates.{c})" if c == "screenshot_path" else f"{c} = excluded.{c}"
        for c in _TEMPLATE_COLUMNS if c != "template_id"
    )
)

# (table, junction table, junction column)
_LOOKUPS = (
    ("subcategories", "template_subcategories", "subcategory_id"),
    ("styles", "template_styles", "style_id"),
    ("features", "template_features", "feature_id"),
)


@dataclass(frozen=True)
class ExecResult:
    rows_affected: int
    inserted_id: Optional[int]


@dataclass(frozen=True)
class TemplateIndexEntry:
    id: int
    slug: str
    name: Optional[str]
    live_preview_url: Optional[str]
    author_id: Optional[str]
    author_name: Optional[str]
    author_avatar: Optional[str]


def normalize_lookup_name(text: str) -> Tuple[str, str, str]:
    """(name, slug, display_name) for a tag shown on the storefront."""
    display = " ".join((text or "").split())
    return display.lower(), slugify(display), display


def feature_icon_type(name: str) -> str:
    low = name.lower()
    if "ecommerce" in low or "e-commerce" in low:
        return "ecommerce"
    if "cms" in low:
        return "cms"
    return "default"


class Transaction:
    """
    Handle for statements inside CatalogStore.transaction(). Nested scopes use
    savepoints so a failing sub-operation rolls back only its own writes.
    """

    def __init__(self, store: "CatalogStore") -> None:
        self._store = store
        self._depth = 0
        self._names = itertools.count(1)

    @property
    def depth(self) -> int:
        return self._depth

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        return await self._store._execute_raw(sql, params)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return await self._store.query(sql, params)

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return await self._store.query_one(sql, params)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator["Transaction"]:
        self._depth += 1
        name = f"sp_{self._depth}_{next(self._names)}"
        await self._store._execute_raw(f"SAVEPOINT {name}")
        try:
            yield self
        except BaseException:
            await self._store._execute_raw(f"ROLLBACK TO SAVEPOINT {name}")
            await self._store._execute_raw(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            await self._store._execute_raw(f"RELEASE SAVEPOINT {name}")
        finally:
            self._depth -= 1


class CatalogStore:
    """
    SQLite-backed catalog. Reads go straight to the connection; every write
    funnels through one asyncio write lock (single writer) and a busy-retry loop.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 30_000,
        retry_attempts: int = 10,
        retry_base_ms: int = 50,
        retry_max_ms: int = 2_000,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_ms = busy_timeout_ms
        self._retry_attempts = retry_attempts
        self._retry_base_ms = retry_base_ms
        self._retry_max_ms = retry_max_ms

        self._lock = threading.Lock()
        self._write_lock = asyncio.Lock()
        self._conn = self._connect(self.db_path)
        self._init_schema()

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=self._busy_timeout_ms / 1000.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA)

    @classmethod
    def from_config(cls, cfg: Any) -> "CatalogStore":
        return cls(
            cfg.catalog_db,
            busy_timeout_ms=cfg.store_busy_timeout_ms,
            retry_attempts=cfg.store_retry_attempts,
            retry_base_ms=cfg.store_retry_base_ms,
            retry_max_ms=cfg.store_retry_max_ms,
        )

    def close(self) -> None:
        with suppress(Exception):
            with self._lock:
                self._conn.close()

    # ---------------- Primitive access ----------------

    async def _execute_raw(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        def _run() -> ExecResult:
            with self._lock:
                cur = self._conn.execute(sql, tuple(params))
                return ExecResult(cur.rowcount, cur.lastrowid)

        return await asyncio.to_thread(_run)

    async def _with_busy_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await retry_async(
                fn,
                max_attempts=self._retry_attempts,
                initial_delay_ms=self._retry_base_ms,
                max_delay_ms=self._retry_max_ms,
                jitter_ms=max(1, self._retry_base_ms // 2),
                retry_on=is_busy_error,
            )
        except sqlite3.OperationalError as e:
            if is_busy_error(e):
                raise StoreBusyError(f"catalog store busy after {self._retry_attempts} attempts: {e}") from e
            raise

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        def _run() -> List[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchall()

        return await self._with_busy_retry(lambda: asyncio.to_thread(_run))

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        def _run() -> Optional[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchone()

        return await self._with_busy_retry(lambda: asyncio.to_thread(_run))

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        """Single write statement, serialized behind every other writer."""
        async with self._write_lock:
            return await self._with_busy_retry(lambda: self._execute_raw(sql, params))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._write_lock:
            await self._with_busy_retry(lambda: self._execute_raw("BEGIN IMMEDIATE"))
            tx = Transaction(self)
            try:
                yield tx
            except BaseException:
                with suppress(sqlite3.Error):
                    await self._execute_raw("ROLLBACK")
                raise
            else:
                await self._execute_raw("COMMIT")

    async def run_in_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` in a fresh transaction, replaying the whole unit when the store is busy."""
        async def _attempt() -> T:
            async with self.transaction() as tx:
                return await fn(tx)

        return await self._with_busy_retry(_attempt)

    # ---------------- Templates ----------------

    async def upsert_template_batch(self, records: Sequence[TemplateRecord]) -> List[int]:
        """Upsert templates and their tag links in one transaction; returns row ids in order."""
        async def _write(tx: Transaction) -> List[int]:
            now = now_iso()
            ids: List[int] = []
            for rec in records:
                row = rec.template_row(now)
                await tx.execute(_UPSERT_TEMPLATE_SQL, [row[c] for c in _TEMPLATE_COLUMNS])
                found = await tx.query_one("SELECT id FROM templates WHERE template_id = ?", (rec.template_id,))
                row_id = int(found["id"])
                ids.append(row_id)
                try:
                    async with tx.savepoint():
                        await self._link_lookups(tx, row_id, rec)
                except sqlite3.Error as e:
                    logger.warning("[catalog] tag linking rolled back for %s: %s", rec.slug, e)
            return ids

        return await self.run_in_transaction(_write)

    async def _link_lookups(self, tx: Transaction, row_id: int, rec: TemplateRecord) -> None:
        values = {"subcategories": rec.subcategories, "styles": rec.styles, "features": rec.features}
        for table, junction, column in _LOOKUPS:
            for raw in values[table]:
                name, slug, display = normalize_lookup_name(raw)
                if not name:
                    continue
                if table == "features":
                    await tx.execute(
                        "INSERT INTO features (name, slug, display_name, icon_type) VALUES (?, ?, ?, ?) "
                        "ON CONFLICT(slug) DO UPDATE SET display_name = excluded.display_name",
                        (name, slug, display, feature_icon_type(name)),
                    )
                else:
                    await tx.execute(
                        f"INSERT INTO {table} (name, slug, display_name) VALUES (?, ?, ?) "
                        "ON CONFLICT(slug) DO UPDATE SET display_name = excluded.display_name",
                        (name, slug, display),
                    )
                lookup = await tx.query_one(f"SELECT id FROM {table} WHERE slug = ?", (slug,))
                await tx.execute(
                    f"INSERT OR IGNORE INTO {junction} (template_id, {column}) VALUES (?, ?)",
                    (row_id, int(lookup["id"])),
                )

    async def update_template_screenshot(
        self,
        row_id: int,
        *,
        screenshot_path: str,
        screenshot_url: Optional[str],
        is_alternate_homepage: bool,
        alternate_homepage_path: Optional[str],
    ) -> bool:
        res = await self.execute(
            "UPDATE templates SET screenshot_path = ?, screenshot_thumbnail_path = NULL, screenshot_url = ?, "
            "is_alternate_homepage = ?, alternate_homepage_path = ?, updated_at = ? WHERE id = ?",
            (screenshot_path, screenshot_url, int(is_alternate_homepage), alternate_homepage_path, now_iso(), row_id),
        )
        return res.rows_affected > 0

    async def get_template(self, slug: str) -> Optional[sqlite3.Row]:
        return await self.query_one("SELECT * FROM templates WHERE slug = ?", (slug,))

    async def template_tags(self, row_id: int) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for table, junction, column in _LOOKUPS:
            rows = await self.query(
                f"SELECT l.name FROM {table} l JOIN {junction} j ON j.{column} = l.id "
                "WHERE j.template_id = ? ORDER BY l.name",
                (row_id,),
            )
            out[table] = [r["name"] for r in rows]
        return out

    async def load_template_index(self) -> Dict[str, TemplateIndexEntry]:
        rows = await self.query(
            "SELECT id, slug, name, live_preview_url, author_id, author_name, author_avatar "
            "FROM templates ORDER BY id"
        )
        return {
            r["slug"]: TemplateIndexEntry(
                id=r["id"], slug=r["slug"], name=r["name"], live_preview_url=r["live_preview_url"],
                author_id=r["author_id"], author_name=r["author_name"], author_avatar=r["author_avatar"],
            )
            for r in rows if r["slug"]
        }

    async def scrape_index(self) -> Dict[str, float]:
        """slug -> scraped_at as epoch milliseconds."""
        rows = await self.query("SELECT slug, scraped_at FROM templates WHERE scraped_at IS NOT NULL")
        out: Dict[str, float] = {}
        for r in rows:
            try:
                out[r["slug"]] = datetime.fromisoformat(r["scraped_at"]).timestamp() * 1000
            except (TypeError, ValueError):
                continue
        return out

    # ---------------- Blacklist ----------------

    async def blacklist_template(
        self, live_preview_url: str, storefront_url: Optional[str] = None, reason: str = "manual_skip"
    ) -> Optional[int]:
        domain_slug = extract_domain_slug(live_preview_url)
        if not domain_slug:
            return None
        res = await self.execute(
            "INSERT INTO template_blacklist (domain_slug, storefront_url, reason, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(domain_slug) DO UPDATE SET storefront_url = excluded.storefront_url, "
            "reason = excluded.reason, updated_at = excluded.updated_at",
            (domain_slug, storefront_url, reason, now_iso()),
        )
        return res.inserted_id

    async def unblacklist_template(self, domain_slug: str) -> bool:
        res = await self.execute("DELETE FROM template_blacklist WHERE domain_slug = ?", (domain_slug,))
        return res.rows_affected > 0

    async def blacklist_set(self) -> Set[str]:
        rows = await self.query("SELECT domain_slug FROM template_blacklist")
        return {r["domain_slug"] for r in rows}

    async def is_blacklisted(self, live_preview_url: str) -> bool:
        domain_slug = extract_domain_slug(live_preview_url)
        if not domain_slug:
            return False
        row = await self.query_one("SELECT id FROM template_blacklist WHERE domain_slug = ?", (domain_slug,))
        return row is not None

    # ---------------- Featured authors / exclusions ----------------

    async def add_featured_author(self, author_id: str, author_name: Optional[str] = None) -> None:
        await self.execute(
            "INSERT INTO featured_authors (author_id, author_name, is_active) VALUES (?, ?, 1) "
            "ON CONFLICT(author_id) DO UPDATE SET is_active = 1, author_name = COALESCE(excluded.author_name, author_name)",
            (author_id, author_name),
        )

    async def featured_author_ids(self) -> Set[str]:
        rows = await self.query("SELECT author_id FROM featured_authors WHERE is_active = 1")
        return {r["author_id"] for r in rows}

    async def add_screenshot_exclusion(self, selector: str, *, author_id: Optional[str] = None) -> None:
        await self.execute(
            "INSERT OR IGNORE INTO screenshot_exclusions (selector, author_id, is_active) VALUES (?, ?, 1)",
            (selector.strip(), author_id),
        )

    async def screenshot_exclusions(self) -> List[Tuple[str, Optional[str]]]:
        """Active (selector, author_id) pairs; author_id None means global."""
        rows = await self.query(
            "SELECT selector, author_id FROM screenshot_exclusions WHERE is_active = 1 ORDER BY id"
        )
        return [(r["selector"], r["author_id"]) for r in rows]
