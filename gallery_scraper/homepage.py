from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)

# Only first-variant forms (home-1, home-a, home-one, home-v1); home-2 etc. are never picked.
_SLUG_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^home$",
    r"^home[-_]?1$",
    r"^home[-_]?a$",
    r"^home[-_]?one$",
    r"^home[-_]?v1$",
    r"^homepage$",
    r"^homepage[-_]?1$",
    r"^homepage[-_]?a$",
    r"^homepage[-_]?one$",
    r"^homepage[-_]?v1$",
))

_FULL_PATH_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^/homepages?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
    r"^/layouts?[-_]?[1-9]?/(home[-_]?[1a]?|home[-_]?one)$",
    r"^/pages?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
    r"^/demos?/(home[-_]?[1a]?|home[-_]?one|homepage[-_]?[1a]?|homepage[-_]?one)$",
))

# Runs in the page: same-host pathnames of every anchor, deduplicated.
_LINKS_JS = """
(host) => {
  const out = [];
  for (const a of Array.from(document.querySelectorAll('a[href]'))) {
    const href = a.getAttribute('href');
    if (!href) continue;
    if (href.startsWith('#') || href.startsWith('javascript:') ||
        href.startsWith('mailto:') || href.startsWith('tel:')) continue;
    if (href.startsWith('http://') || href.startsWith('https://')) {
      try {
        const u = new URL(href);
        if (u.host === host) out.push(u.pathname);
      } catch (e) {}
    } else if (href.startsWith('/')) {
      out.push(href);
    } else {
      out.push('/' + href);
    }
  }
  return [...new Set(out)];
}
"""


@dataclass
class TargetResolution:
    screenshot_url: str
    original_url: str
    is_alternate_homepage: bool = False
    detected_path: Optional[str] = None
    candidate_links: List[str] = field(default_factory=list)


def _segments(path: str) -> List[str]:
    return [s for s in path.split("/") if s]


def _clean_path(path: str) -> str:
    p = path if path.startswith("/") else "/" + path
    return re.split(r"[?#]", p, maxsplit=1)[0]


def matches_homepage_pattern(path: str) -> bool:
    cleaned = _clean_path(path)
    segs = _segments(cleaned)
    if not segs:
        return False
    if any(p.search(cleaned) for p in _FULL_PATH_PATTERNS):
        return True
    return any(p.search(segs[-1]) for p in _SLUG_PATTERNS)


def score_candidate(path: str) -> int:
    """Higher is more likely the real landing page."""
    norm = path.lower()
    segs = _segments(norm)
    last = segs[-1] if segs else ""

    score = -10 * len(segs)
    if "home" in last:
        score += 50
    if last in ("home", "homepage"):
        score += 30
    if last.endswith("1"):
        score += 20
    if last.endswith("a"):
        score += 15
    if "/homepages/" in norm:
        score += 10
    if "/layouts" in norm:
        score += 5
    return score


def rank_candidates(paths: Iterable[str]) -> List[Tuple[str, int]]:
    scored = [(p, score_candidate(p)) for p in paths if matches_homepage_pattern(p)]
    # stable sort keeps link order on ties
    scored.sort(key=lambda t: t[1], reverse=True)
    return scored


def choose_target(entry_url: str, links: Iterable[str]) -> TargetResolution:
    links = list(links)
    result = TargetResolution(screenshot_url=entry_url, original_url=entry_url, candidate_links=links)
    ranked = rank_candidates(links)
    if not ranked:
        return result
    best_path, best_score = ranked[0]
    parsed = urlparse(entry_url)
    origin = f"{parsed.scheme}://{parsed.netloc}"
    result.screenshot_url = urljoin(origin + "/", best_path.lstrip("/"))
    result.is_alternate_homepage = True
    result.detected_path = best_path
    logger.debug("[homepage] %s -> %s (score=%d of %d candidates)", entry_url, best_path, best_score, len(ranked))
    return result


async def resolve_target(page: Any, entry_url: str) -> TargetResolution:
    """
    Pick the true landing page among the links of an already-loaded ``page``.
    Falls back to ``entry_url`` when no candidate matches or link extraction fails.
    """
    host = urlparse(entry_url).netloc
    try:
        links = await page.evaluate(_LINKS_JS, host)
    except Exception as e:
        logger.warning("[homepage] link extraction failed for %s: %s", entry_url, e)
        return TargetResolution(screenshot_url=entry_url, original_url=entry_url)
    return choose_target(entry_url, links or [])
