from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.utils import extract_domain_slug

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 60.0


class ScreenshotRules:
    """
    Cached view of the catalog tables that steer screenshots: element
    exclusions (global and per author), featured authors and the blacklist.
    Everything is reloaded together once the cache is older than ``ttl_s``.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._loaded_at: Optional[float] = None
        self._exclusions: List[Tuple[str, Optional[str]]] = []
        self._featured: Set[str] = set()
        self._blacklist: Set[str] = set()

    def invalidate(self) -> None:
        self._loaded_at = None

    async def _refresh(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._loaded_at is not None and now - self._loaded_at < self.ttl_s:
                return
            self._exclusions = await self.store.screenshot_exclusions()
            self._featured = await self.store.featured_author_ids()
            self._blacklist = await self.store.blacklist_set()
            self._loaded_at = now
            logger.debug(
                "[rules] loaded exclusions=%d featured=%d blacklist=%d",
                len(self._exclusions), len(self._featured), len(self._blacklist),
            )

    async def exclusion_selectors(self, author_id: Optional[str] = None, extra: Iterable[str] = ()) -> List[str]:
        await self._refresh()
        out: List[str] = []
        for selector, owner in self._exclusions:
            if owner is None or (author_id and owner == author_id):
                if selector not in out:
                    out.append(selector)
        for selector in extra:
            if selector and selector not in out:
                out.append(selector)
        return out

    async def is_featured(self, author_id: Optional[str]) -> bool:
        if not author_id:
            return False
        await self._refresh()
        return author_id in self._featured

    async def is_blacklisted(self, live_preview_url: str) -> bool:
        slug = extract_domain_slug(live_preview_url)
        if not slug:
            return False
        await self._refresh()
        return slug in self._blacklist
