from types import SimpleNamespace

import httpx
import pytest

from gallery_scraper.object_store import (
    HttpObjectStore,
    LocalObjectStore,
    object_store_from_config,
)


@pytest.mark.asyncio
async def test_local_store_put_and_delete(tmp_path):
    store = LocalObjectStore(tmp_path, "https://cdn.example.com/shots/")
    url = await store.put("alpha.webp", b"RIFFdata")
    assert url == "https://cdn.example.com/shots/alpha.webp"
    assert (tmp_path / "alpha.webp").read_bytes() == b"RIFFdata"
    assert not (tmp_path / "alpha.webp.tmp").exists()

    await store.put("alpha.webp", b"RIFFnew")
    assert (tmp_path / "alpha.webp").read_bytes() == b"RIFFnew"

    await store.delete("alpha.webp")
    await store.delete("alpha.webp")
    assert not (tmp_path / "alpha.webp").exists()


@pytest.mark.parametrize("key", ["", "../escape.webp", "a//b.webp"])
def test_unsafe_keys_are_rejected(tmp_path, key):
    store = LocalObjectStore(tmp_path, "https://cdn")
    with pytest.raises(ValueError):
        store.path_for(key)


@pytest.mark.asyncio
async def test_http_store_put_retries_server_errors():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), request.headers.get("authorization")))
        if len(seen) == 1:
            return httpx.Response(503)
        assert request.headers["content-type"] == "image/webp"
        assert request.content == b"img"
        return httpx.Response(200)

    store = HttpObjectStore(
        "https://objects.example.com/bucket/", "https://cdn.example.com",
        token="secret", transport=httpx.MockTransport(handler),
    )
    url = await store.put("alpha.webp", b"img")
    await store.aclose()

    assert url == "https://cdn.example.com/alpha.webp"
    assert len(seen) == 2
    assert seen[1] == ("PUT", "https://objects.example.com/bucket/alpha.webp", "Bearer secret")


@pytest.mark.asyncio
async def test_http_store_client_errors_fail_fast_and_delete_tolerates_404():
    calls = []

    def handler(request):
        calls.append(request.method)
        return httpx.Response(403 if request.method == "PUT" else 404)

    store = HttpObjectStore("https://objects.example.com", "https://cdn", transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        await store.put("alpha.webp", b"img")
    await store.delete("alpha.webp")
    await store.aclose()
    assert calls == ["PUT", "DELETE"]


@pytest.mark.asyncio
async def test_factory_picks_backend(tmp_path):
    local_cfg = SimpleNamespace(
        object_store_url=None, object_store_token=None, public_base_url="https://cdn", screenshot_dir=tmp_path,
    )
    assert isinstance(object_store_from_config(local_cfg), LocalObjectStore)

    http_cfg = SimpleNamespace(
        object_store_url="https://objects.example.com", object_store_token=None,
        public_base_url="https://cdn", screenshot_dir=tmp_path,
    )
    store = object_store_from_config(http_cfg)
    assert isinstance(store, HttpObjectStore)
    await store.aclose()
