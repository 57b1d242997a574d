import pytest

from gallery_extensions.screenshot_rules import ScreenshotRules


class CountingStore:
    def __init__(self):
        self.loads = 0
        self.exclusions = [(".cookie", None), (".promo", "a1"), (".cookie", "a1")]
        self.featured = {"a1"}
        self.blacklist = {"spam"}

    async def screenshot_exclusions(self):
        self.loads += 1
        return list(self.exclusions)

    async def featured_author_ids(self):
        return set(self.featured)

    async def blacklist_set(self):
        return set(self.blacklist)


class Clock:
    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t


@pytest.mark.asyncio
async def test_selectors_global_plus_author_plus_extra_deduplicated():
    rules = ScreenshotRules(CountingStore())
    assert await rules.exclusion_selectors("a1", extra=[".chat", ".promo"]) == [".cookie", ".promo", ".chat"]
    assert await rules.exclusion_selectors(None) == [".cookie"]
    assert await rules.exclusion_selectors("b2") == [".cookie"]


@pytest.mark.asyncio
async def test_cache_reloads_after_ttl_or_invalidate():
    store = CountingStore()
    clock = Clock()
    rules = ScreenshotRules(store, ttl_s=60, clock=clock)

    assert await rules.is_featured("a1")
    assert await rules.is_blacklisted("https://spam.webflow.io")
    assert not await rules.is_blacklisted("https://ham.webflow.io")
    assert store.loads == 1

    store.featured = set()
    clock.t += 30
    assert await rules.is_featured("a1")  # still cached
    clock.t += 31
    assert not await rules.is_featured("a1")
    assert store.loads == 2

    store.blacklist = set()
    rules.invalidate()
    assert not await rules.is_blacklisted("https://spam.webflow.io")
    assert store.loads == 3


@pytest.mark.asyncio
async def test_empty_inputs_skip_store():
    store = CountingStore()
    rules = ScreenshotRules(store)
    assert not await rules.is_featured(None)
    assert not await rules.is_blacklisted("")
    assert store.loads == 0
