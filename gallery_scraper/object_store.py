from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from .utils import retry_async

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str = "image/webp") -> str: ...

    async def delete(self, key: str) -> None: ...

    async def aclose(self) -> None: ...


def _public_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{key.lstrip('/')}"


def _safe_key(key: str) -> str:
    key = key.replace("\\", "/").lstrip("/")
    if not key or any(part in ("", "..") for part in key.split("/")):
        raise ValueError(f"invalid object key: {key!r}")
    return key


class LocalObjectStore:
    """Screenshots on the local disk, served from ``public_base_url``."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url

    def path_for(self, key: str) -> Path:
        return self.root / _safe_key(key)

    async def put(self, key: str, data: bytes, content_type: str = "image/webp") -> str:
        path = self.path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        await asyncio.to_thread(_write)
        return _public_url(self.public_base_url, _safe_key(key))

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def aclose(self) -> None:
        return None


def _retryable_http(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


class HttpObjectStore:
    """PUT/DELETE against an S3-style HTTP endpoint (one object per key)."""

    def __init__(
        self,
        base_url: str,
        public_base_url: str,
        *,
        token: Optional[str] = None,
        timeout_s: float = 30.0,
        attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.public_base_url = public_base_url
        self.attempts = max(1, attempts)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
            headers=headers,
            transport=transport,
        )

    async def put(self, key: str, data: bytes, content_type: str = "image/webp") -> str:
        key = _safe_key(key)
        url = _public_url(self.base_url, key)

        async def _put() -> None:
            resp = await self._client.put(url, content=data, headers={"Content-Type": content_type})
            resp.raise_for_status()

        await retry_async(
            _put, max_attempts=self.attempts, initial_delay_ms=250, max_delay_ms=4000,
            jitter_ms=250, retry_on=_retryable_http,
        )
        return _public_url(self.public_base_url, key)

    async def delete(self, key: str) -> None:
        url = _public_url(self.base_url, _safe_key(key))
        resp = await self._client.delete(url)
        if resp.status_code != 404:
            resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def object_store_from_config(cfg: Any) -> ObjectStore:
    if cfg.object_store_url:
        logger.info("[objects] using HTTP object store at %s", cfg.object_store_url)
        return HttpObjectStore(cfg.object_store_url, cfg.public_base_url, token=cfg.object_store_token)
    return LocalObjectStore(cfg.screenshot_dir, cfg.public_base_url)
