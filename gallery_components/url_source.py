from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
from bs4 import BeautifulSoup

from gallery_scraper.utils import extract_slug, retry_async

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Sitemap discovery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SitemapEntry:
    url: str
    slug: str
    lastmod: Optional[datetime] = None

    @property
    def lastmod_ms(self) -> Optional[float]:
        return self.lastmod.timestamp() * 1000 if self.lastmod else None


@dataclass
class IncrementalPlan:
    missing: List[SitemapEntry] = field(default_factory=list)
    updated: List[SitemapEntry] = field(default_factory=list)
    unchanged: int = 0

    @property
    def urls(self) -> List[str]:
        return [e.url for e in (*self.missing, *self.updated)]


def _parse_lastmod(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    text = raw.strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_sitemap(xml: str, prefix: str) -> List[SitemapEntry]:
    """<url><loc>/<lastmod> pairs whose loc starts with ``prefix``; first occurrence wins."""
    soup = BeautifulSoup(xml, "xml")
    seen: Dict[str, SitemapEntry] = {}
    for node in soup.find_all("url"):
        loc = node.find("loc")
        if loc is None or not loc.text:
            continue
        url = loc.text.strip()
        if not url.startswith(prefix) or url in seen:
            continue
        slug = extract_slug(url)
        if not slug or slug == "unknown":
            continue
        lastmod = node.find("lastmod")
        seen[url] = SitemapEntry(url, slug, _parse_lastmod(lastmod.text if lastmod is not None else None))
    return list(seen.values())


async def fetch_sitemap(
    sitemap_url: str,
    prefix: str,
    *,
    user_agent: str = "Mozilla/5.0",
    timeout_s: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[SitemapEntry]:
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8",
    }
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s), headers=headers, follow_redirects=True, transport=transport
    ) as client:

        async def _get() -> str:
            resp = await client.get(sitemap_url)
            resp.raise_for_status()
            return resp.text

        xml = await retry_async(
            _get, max_attempts=3, initial_delay_ms=500, max_delay_ms=5000, jitter_ms=250,
            retry_on=lambda e: isinstance(e, (httpx.TimeoutException, httpx.NetworkError)),
        )
    entries = parse_sitemap(xml, prefix)
    log.info("[sitemap] %d template urls under %s", len(entries), prefix)
    return entries


def plan_incremental(
    entries: Iterable[SitemapEntry],
    scraped_at_ms: Mapping[str, float],
    *,
    threshold_ms: int = 60_000,
) -> IncrementalPlan:
    """
    Split sitemap entries into templates missing from the catalog and those
    whose lastmod is more than ``threshold_ms`` newer than their scrape time.
    """
    plan = IncrementalPlan()
    for e in entries:
        scraped = scraped_at_ms.get(e.slug)
        if scraped is None:
            plan.missing.append(e)
        elif e.lastmod_ms is not None and e.lastmod_ms - scraped > threshold_ms:
            plan.updated.append(e)
        else:
            plan.unchanged += 1
    log.info(
        "[sitemap] incremental plan: %d missing, %d updated, %d unchanged",
        len(plan.missing), len(plan.updated), plan.unchanged,
    )
    return plan


# ---------------------------------------------------------------------------
# Plain URL lists
# ---------------------------------------------------------------------------


def load_url_file(path: Path, *, limit: Optional[int] = None) -> List[str]:
    """One URL per line; blank lines and ``#`` comment lines are ignored, duplicates dropped."""
    out: List[str] = []
    seen = set()
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        url = line.strip()
        if not url or url.startswith("#") or url in seen:
            continue
        if not url.startswith(("http://", "https://")):
            log.warning("[urls] skipping non-http line: %s", url)
            continue
        seen.add(url)
        out.append(url)
        if limit is not None and len(out) >= limit:
            break
    return out


async def discover_urls(cfg: Any, store: Any, *, incremental: bool = True, limit: Optional[int] = None) -> List[str]:
    entries = await fetch_sitemap(cfg.sitemap_url, cfg.template_url_prefix, user_agent=cfg.user_agent)
    if incremental:
        urls = plan_incremental(entries, await store.scrape_index(), threshold_ms=cfg.incremental_threshold_ms).urls
    else:
        urls = [e.url for e in entries]
    return urls[:limit] if limit is not None else urls
