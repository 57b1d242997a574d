from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .config import ScrapeSettings
from .imaging import is_likely_blank

logger = logging.getLogger(__name__)

NETWORK_IDLE_TIMEOUT_MS = 10_000
BLANK_RETRY_MAX_BYTES = 25_000
BLANK_RETRY_DELAY_MS = 1_500

# Running finite animations plus the two layout heights the settle loop compares.
_SETTLE_PROBE_JS = """
() => {
  const anims = typeof document.getAnimations === 'function'
    ? document.getAnimations({ subtree: true }) : [];
  let runningFinite = 0;
  for (const a of anims) {
    if (a.playState !== 'running') continue;
    try {
      const t = a.effect && a.effect.getComputedTiming ? a.effect.getComputedTiming() : null;
      if (t && t.iterations === Infinity) continue;
    } catch (e) {}
    runningFinite++;
  }
  const scrollHeight = document.documentElement.scrollHeight || document.body.scrollHeight || 0;
  const bodyHeight = document.body ? document.body.getBoundingClientRect().height : 0;
  return { runningFinite, scrollHeight, bodyHeight };
}
"""

_REMOVE_JS = """
(sels) => {
  for (const sel of sels) {
    try {
      let s = sel.trim();
      if (s && !s.startsWith('.') && !s.startsWith('#') && !s.startsWith('[')) {
        s = `.${s}, #${s}`;
      }
      document.querySelectorAll(s).forEach(el => el.remove());
    } catch (e) {}
  }
}
"""

_HAS_ANY_JS = """
(sels) => sels.some(s => { try { return !!document.querySelector(s); } catch (e) { return false; } })
"""


@dataclass(frozen=True)
class SettleResult:
    settled: bool
    waited_ms: int
    probes: int


async def wait_for_settle(
    page: Any,
    *,
    stable_for_ms: int,
    max_wait_ms: int,
    interval_ms: int,
    clock=time.monotonic,
) -> SettleResult:
    """
    Poll animation count and layout height until both stay unchanged for
    ``stable_for_ms``. Gives up after ``max_wait_ms`` and reports settled=False.
    """
    start = clock()
    stable_since: Optional[float] = None
    last_scroll: Optional[float] = None
    last_body: Optional[float] = None
    probes = 0

    while (clock() - start) * 1000 < max_wait_ms:
        state = await page.evaluate(_SETTLE_PROBE_JS)
        probes += 1
        scroll_h = state.get("scrollHeight", 0)
        body_h = state.get("bodyHeight", 0)
        layout_stable = last_scroll is None or (
            scroll_h == last_scroll and round(body_h) == round(last_body if last_body is not None else body_h)
        )
        if state.get("runningFinite", 0) == 0 and layout_stable:
            now = clock()
            if stable_since is None:
                stable_since = now
            if (now - stable_since) * 1000 >= stable_for_ms:
                return SettleResult(True, int((now - start) * 1000), probes)
        else:
            stable_since = None

        last_scroll, last_body = scroll_h, body_h
        await page.wait_for_timeout(interval_ms)

    waited = int((clock() - start) * 1000)
    logger.debug("[stabilize] gave up after %dms (%d probes)", waited, probes)
    return SettleResult(False, waited, probes)


async def remove_elements(page: Any, selectors: Sequence[str]) -> None:
    if selectors:
        await page.evaluate(_REMOVE_JS, list(selectors))


async def page_has_any_selector(page: Any, selectors: Sequence[str]) -> bool:
    if not selectors:
        return True
    return bool(await page.evaluate(_HAS_ANY_JS, list(selectors)))


async def prepare_page(page: Any, settings: ScrapeSettings, remove_selectors: Sequence[str] = ()) -> SettleResult:
    """
    load -> networkidle -> animation wait -> scroll to top -> nudge scroll ->
    strip excluded elements -> settle loop.
    """
    try:
        await page.wait_for_load_state("load", timeout=settings.timeout_ms)
    except Exception as e:
        logger.debug("[stabilize] load state not reached: %s", e)
    try:
        await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
    except Exception as e:
        logger.debug("[stabilize] networkidle not reached: %s", e)

    await page.wait_for_timeout(settings.animation_wait_ms)

    await page.evaluate("() => window.scrollTo(0, 0)")
    await page.wait_for_timeout(200)

    # Scroll-triggered reveal animations only fire after some scrolling.
    if settings.nudge_scroll_ratio > 0:
        await page.evaluate(
            "(ratio) => window.scrollTo(0, Math.floor(window.innerHeight * ratio))",
            settings.nudge_scroll_ratio,
        )
        await page.wait_for_timeout(settings.nudge_wait_ms)
        await page.evaluate("() => window.scrollTo(0, 0)")
        await page.wait_for_timeout(settings.nudge_after_ms)

    await remove_elements(page, remove_selectors)

    return await wait_for_settle(
        page,
        stable_for_ms=settings.stability_stable_ms,
        max_wait_ms=settings.stability_max_wait_ms,
        interval_ms=settings.stability_interval_ms,
    )


async def capture_screenshot(page: Any, settings: ScrapeSettings, *, slug: str = "") -> Optional[bytes]:
    """
    Viewport JPEG. A small capture that looks blank gets exactly one recapture;
    if that is blank too the screenshot is dropped (None).
    """
    quality = max(1, min(100, settings.jpeg_quality))
    data = await page.screenshot(type="jpeg", quality=quality, full_page=False)
    if not data:
        return None
    if len(data) >= BLANK_RETRY_MAX_BYTES:
        return data
    if not await asyncio.to_thread(is_likely_blank, data):
        return data

    logger.warning("[stabilize] screenshot looked blank for %s, retrying once", slug)
    await page.wait_for_timeout(BLANK_RETRY_DELAY_MS)
    retry = await page.screenshot(type="jpeg", quality=quality, full_page=False)
    if retry and not await asyncio.to_thread(is_likely_blank, retry):
        return retry
    logger.warning("[stabilize] screenshot still blank for %s, dropping it", slug)
    return None
