from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from gallery_components import url_source
from gallery_components.url_source import (
    SitemapEntry,
    fetch_sitemap,
    load_url_file,
    parse_sitemap,
    plan_incremental,
)

PREFIX = "https://templates.example.com/html/"

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://templates.example.com/html/alpha</loc><lastmod>2025-01-10T12:00:00Z</lastmod></url>
  <url><loc>https://templates.example.com/html/beta</loc><lastmod>2025-01-10</lastmod></url>
  <url><loc>https://templates.example.com/html/gamma</loc></url>
  <url><loc>https://templates.example.com/html/alpha</loc><lastmod>2030-01-01</lastmod></url>
  <url><loc>https://templates.example.com/blog/news</loc></url>
</urlset>
"""


def _ms(*args):
    return datetime(*args, tzinfo=timezone.utc).timestamp() * 1000


def test_parse_sitemap_filters_prefix_and_dedupes():
    entries = parse_sitemap(SITEMAP, PREFIX)
    assert [e.slug for e in entries] == ["alpha", "beta", "gamma"]
    assert entries[0].lastmod_ms == _ms(2025, 1, 10, 12)
    assert entries[1].lastmod_ms == _ms(2025, 1, 10)
    assert entries[2].lastmod is None


def test_plan_incremental_split():
    entries = [
        SitemapEntry(PREFIX + "new", "new", None),
        SitemapEntry(PREFIX + "fresh", "fresh", datetime(2025, 1, 1, 0, 0, 30, tzinfo=timezone.utc)),
        SitemapEntry(PREFIX + "stale", "stale", datetime(2025, 1, 2, tzinfo=timezone.utc)),
        SitemapEntry(PREFIX + "nodate", "nodate", None),
    ]
    scraped = {"fresh": _ms(2025, 1, 1), "stale": _ms(2025, 1, 1), "nodate": _ms(2025, 1, 1)}
    plan = plan_incremental(entries, scraped, threshold_ms=60_000)
    assert [e.slug for e in plan.missing] == ["new"]
    assert [e.slug for e in plan.updated] == ["stale"]
    assert plan.unchanged == 2
    assert plan.urls == [PREFIX + "new", PREFIX + "stale"]


@pytest.mark.asyncio
async def test_fetch_sitemap_retries_network_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("refused", request=request)
        assert request.headers["user-agent"] == "pytest-UA"
        return httpx.Response(200, text=SITEMAP)

    entries = await fetch_sitemap(
        "https://templates.example.com/sitemap.xml", PREFIX,
        user_agent="pytest-UA", transport=httpx.MockTransport(handler),
    )
    assert calls["n"] == 2
    assert len(entries) == 3


@pytest.mark.asyncio
async def test_fetch_sitemap_http_error_is_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(404)

    with pytest.raises(httpx.HTTPStatusError):
        await fetch_sitemap("https://x/sitemap.xml", PREFIX, transport=httpx.MockTransport(handler))
    assert calls["n"] == 1


def test_load_url_file(tmp_path):
    f = tmp_path / "urls.txt"
    f.write_text(
        "# comment\n\n"
        f"{PREFIX}a\n"
        f"  {PREFIX}b#section  \n"
        f"{PREFIX}a\n"
        "ftp://nope\n"
        f"{PREFIX}c\n",
        encoding="utf-8",
    )
    assert load_url_file(f) == [PREFIX + "a", PREFIX + "b#section", PREFIX + "c"]
    assert load_url_file(f, limit=2) == [PREFIX + "a", PREFIX + "b#section"]


@pytest.mark.asyncio
async def test_discover_urls_incremental(monkeypatch):
    async def fake_fetch(url, prefix, *, user_agent):
        return parse_sitemap(SITEMAP, prefix)

    class Store:
        async def scrape_index(self):
            return {"alpha": _ms(2025, 1, 10, 12), "beta": _ms(2025, 1, 10)}

    monkeypatch.setattr(url_source, "fetch_sitemap", fake_fetch)
    cfg = SimpleNamespace(
        sitemap_url="https://x/sitemap.xml", template_url_prefix=PREFIX,
        user_agent="UA", incremental_threshold_ms=60_000,
    )
    assert await url_source.discover_urls(cfg, Store()) == [PREFIX + "gamma"]
    all_urls = await url_source.discover_urls(cfg, Store(), incremental=False, limit=2)
    assert all_urls == [PREFIX + "alpha", PREFIX + "beta"]
