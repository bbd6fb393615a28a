"""On-disk named caches of HTTP responses.

Layout under the cache root::

    <root>/<quoted cache name>/<sha256 of key>.json   # status, headers, url
    <root>/<quoted cache name>/<sha256 of key>.body   # decoded response body
    <root>/.staging-<uuid>/                            # cache being populated

An entry exists once its ``.json`` file is in place; both files are written to
a temporary name first and moved into place with ``os.replace``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union
from urllib.parse import quote, unquote

import httpx

_logger = logging.getLogger(__name__)

# The body is stored decoded, so transfer framing headers no longer apply.
_DROPPED_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding", "connection"})
_STAGING_PREFIX = ".staging-"

CacheKey = Union[str, httpx.URL, httpx.Request]


def cache_key(key: CacheKey) -> str:
    """Normalize a request or URL into the string an entry is stored under."""
    url = key.url if isinstance(key, httpx.Request) else httpx.URL(str(key))
    return str(url).split("#", 1)[0]


async def _to_thread(func: Any, /, *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


class AssetCache:
    """One named cache: a mapping of request URL to stored response."""

    def __init__(self, name: str, directory: Path) -> None:
        self.name = name
        self.directory = directory

    def _entry_paths(self, key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json", self.directory / f"{digest}.body"

    async def match(self, key: CacheKey) -> httpx.Response | None:
        normalized = cache_key(key)
        meta_path, body_path = self._entry_paths(normalized)

        def _read() -> tuple[dict[str, Any], bytes] | None:
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                body = body_path.read_bytes()
            except FileNotFoundError:
                return None
            return meta, body

        entry = await _to_thread(_read)
        if entry is None:
            return None
        meta, body = entry
        request = key if isinstance(key, httpx.Request) else httpx.Request("GET", normalized)
        return httpx.Response(
            status_code=int(meta["status"]),
            headers=[(str(k), str(v)) for k, v in meta.get("headers", [])],
            content=body,
            request=request,
        )

    async def put(self, key: CacheKey, response: httpx.Response) -> None:
        normalized = cache_key(key)
        meta_path, body_path = self._entry_paths(normalized)
        body = await response.aread()
        meta = {
            "url": normalized,
            "status": response.status_code,
            "headers": [[k, v] for k, v in response.headers.multi_items() if k.lower() not in _DROPPED_HEADERS],
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }

        def _write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            _write_atomic(body_path, body)
            _write_atomic(meta_path, json.dumps(meta, ensure_ascii=False).encode("utf-8"))

        await _to_thread(_write)
        _logger.debug("cache.put", extra={"cache": self.name, "url": normalized, "status": response.status_code})

    async def delete(self, key: CacheKey) -> bool:
        meta_path, body_path = self._entry_paths(cache_key(key))

        def _remove() -> bool:
            existed = meta_path.exists()
            for path in (meta_path, body_path):
                path.unlink(missing_ok=True)
            return existed

        return bool(await _to_thread(_remove))

    async def keys(self) -> list[str]:
        def _list() -> list[str]:
            if not self.directory.is_dir():
                return []
            urls = []
            for meta_path in sorted(self.directory.glob("*.json")):
                try:
                    urls.append(json.loads(meta_path.read_text(encoding="utf-8"))["url"])
                except (OSError, ValueError, KeyError):
                    _logger.warning("cache.unreadable_entry", extra={"cache": self.name, "path": str(meta_path)})
            return sorted(urls)

        return list(await _to_thread(_list))


class CacheStorage:
    """The set of named caches under one root directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser()

    def _directory(self, name: str) -> Path:
        return self.root / quote(name, safe="")

    async def open(self, name: str) -> AssetCache:
        directory = self._directory(name)
        await _to_thread(directory.mkdir, parents=True, exist_ok=True)
        return AssetCache(name, directory)

    async def has(self, name: str) -> bool:
        return bool(await _to_thread(self._directory(name).is_dir))

    async def keys(self) -> list[str]:
        def _list() -> list[str]:
            if not self.root.is_dir():
                return []
            return sorted(
                unquote(entry.name)
                for entry in self.root.iterdir()
                if entry.is_dir() and not entry.name.startswith(".")
            )

        return list(await _to_thread(_list))

    async def delete(self, name: str) -> bool:
        directory = self._directory(name)
        if not await self.has(name):
            return False
        await _to_thread(shutil.rmtree, directory)
        _logger.info("cache.deleted", extra={"cache": name})
        return True

    @asynccontextmanager
    async def staged(self, name: str) -> AsyncIterator[AssetCache]:
        """Populate a cache out of sight and publish it only if the block succeeds.

        On any exception the partial cache is removed and the previous cache of
        the same name, if any, is left as it was.
        """
        staging = self.root / f"{_STAGING_PREFIX}{uuid.uuid4().hex}"
        await _to_thread(staging.mkdir, parents=True, exist_ok=True)
        try:
            yield AssetCache(name, staging)
        except BaseException:
            await _to_thread(shutil.rmtree, staging, ignore_errors=True)
            raise
        target = self._directory(name)

        def _publish() -> None:
            if target.exists():
                shutil.rmtree(target)
            os.replace(staging, target)

        await _to_thread(_publish)
