"""Generation-tagged offline cache of the application's static assets.

Worker lifecycle::

    NEW -> INSTALLING -> INSTALLED -> ACTIVATING -> ACTIVE
              \\-> REDUNDANT (install failed; the host retries later)

Install fetches every allow-listed manifest asset, checks it against its
subresource-integrity hash and publishes ``<prefix><manifest version>`` only if
all of them pass. Activation deletes every other generation. While active,
navigations are network-first with a stored ``index.html`` fallback and
sub-resources are cache-first. ``handle_fetch`` never raises for network or
cache failures; it answers with a terminal response instead.

Allow/deny patterns are matched against the path relative to the origin
(no query string), both at install time and at runtime.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx

from .cache_storage import AssetCache, CacheStorage
from .config import AssetSettings, get_settings
from .errors import AssetIntegrityFailure, NetworkUnavailable, StorageUnavailable

_logger = logging.getLogger(__name__)

# Markup, scripts, styles, images, fonts, data manifests and runtime binaries.
DEFAULT_INCLUDE_PATTERNS: tuple[str, ...] = (
    r"\.dll$",
    r"\.pdb$",
    r"\.wasm",
    r"\.html",
    r"\.js$",
    r"\.json$",
    r"\.css$",
    r"\.woff2?$",
    r"\.png$",
    r"\.jpe?g$",
    r"\.gif$",
    r"\.svg$",
    r"\.ico$",
    r"\.blat$",
    r"\.dat$",
)
# The worker's own bootstrap script must always come from the network.
DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (r"^service-worker\.js$",)

OFFLINE_FALLBACK_PATH = "index.html"
OFFLINE_NAVIGATION_MESSAGE = "Offline and no cached version available"
NETWORK_ERROR_MESSAGE = "Network error occurred"
TERMINAL_HEADER = "X-Offline-Terminal"

_MANIFEST_SCRIPT_RE = re.compile(r"^\s*(?:self|window|globalThis)\.assetsManifest\s*=\s*")
_SRI_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}


class WorkerState(str, Enum):
    NEW = "new"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVE = "active"
    REDUNDANT = "redundant"


class RequestMode(str, Enum):
    NAVIGATE = "navigate"
    SAME_ORIGIN = "same-origin"
    NO_CORS = "no-cors"
    CORS = "cors"


class RequestKind(str, Enum):
    PASSTHROUGH = "passthrough"
    NAVIGATION = "navigation"
    SUBRESOURCE = "subresource"


@dataclass(slots=True, frozen=True)
class FetchEvent:
    request: httpx.Request
    mode: RequestMode = RequestMode.NO_CORS


@dataclass(slots=True, frozen=True)
class ManifestAsset:
    url: str
    hash: str


@dataclass(slots=True, frozen=True)
class AssetManifest:
    """Published asset list; ``version`` changes whenever any asset changes."""

    version: str
    assets: tuple[ManifestAsset, ...]

    @classmethod
    def from_dict(cls, data: Any) -> AssetManifest:
        if not isinstance(data, dict):
            raise ValueError("Asset manifest must be a JSON object")
        version = str(data.get("version") or "").strip()
        if not version:
            raise ValueError("Asset manifest has no version")
        assets = []
        for entry in data.get("assets") or []:
            if not isinstance(entry, dict) or not entry.get("url"):
                raise ValueError(f"Invalid asset manifest entry: {entry!r}")
            assets.append(ManifestAsset(url=str(entry["url"]), hash=str(entry.get("hash") or "")))
        return cls(version=version, assets=tuple(assets))

    @classmethod
    def parse(cls, text: str) -> AssetManifest:
        """Parse a manifest given as JSON or as the ``self.assetsManifest = {...};`` script."""
        body = text.strip()
        match = _MANIFEST_SCRIPT_RE.match(body)
        if match:
            body = body[match.end() :].rstrip().rstrip(";")
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ValueError(f"Invalid asset manifest: {exc}") from exc
        return cls.from_dict(data)


def verify_integrity(body: bytes, integrity: str) -> bool:
    """Check ``body`` against a subresource-integrity string such as ``sha256-<base64>``.

    Any one matching token is enough; tokens with unknown algorithms are ignored.
    """
    for token in integrity.split():
        algorithm, _, expected = token.partition("-")
        expected = expected.split("?", 1)[0]
        hasher = _SRI_ALGORITHMS.get(algorithm.lower())
        if hasher is None or not expected:
            continue
        digest = base64.b64encode(hasher(body).digest()).decode("ascii")
        if hmac.compare_digest(digest, expected):
            return True
    return False


def _terminal_response(status_code: int, message: str, request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        status_code,
        text=message,
        headers={TERMINAL_HEADER: "1", "Cache-Control": "no-store"},
        request=request,
    )


async def load_manifest(settings: Optional[AssetSettings] = None, *, client: Optional[httpx.AsyncClient] = None) -> AssetManifest:
    """Read the manifest from a local file, or fetch it relative to the origin."""
    resolved = settings or get_settings().assets
    local = Path(resolved.manifest_path).expanduser()
    if local.is_file():
        return AssetManifest.parse(local.read_text(encoding="utf-8"))
    url = str(httpx.URL(resolved.origin).join(resolved.manifest_path))
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=resolved.fetch_timeout_seconds, follow_redirects=True)
    try:
        response = await http_client.get(url, headers={"Cache-Control": "no-cache"})
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise NetworkUnavailable(f"Failed to load asset manifest from {url}: {exc}", data={"url": url}) from exc
    finally:
        if owns_client:
            await http_client.aclose()
    return AssetManifest.parse(response.text)


class AssetCacheManager:
    """Installs, activates and serves one generation of the offline asset cache."""

    def __init__(
        self,
        manifest: AssetManifest,
        settings: Optional[AssetSettings] = None,
        *,
        storage: Optional[CacheStorage] = None,
        client: Optional[httpx.AsyncClient] = None,
        include_patterns: Iterable[str] = DEFAULT_INCLUDE_PATTERNS,
        exclude_patterns: Iterable[str] = DEFAULT_EXCLUDE_PATTERNS,
    ) -> None:
        self.settings = settings or get_settings().assets
        self.manifest = manifest
        self.storage = storage or CacheStorage(self.settings.cache_root)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.settings.fetch_timeout_seconds, follow_redirects=True)
        self._include: tuple[re.Pattern[str], ...] = tuple(re.compile(p) for p in include_patterns)
        self._exclude: tuple[re.Pattern[str], ...] = tuple(re.compile(p) for p in exclude_patterns)
        self._origin = httpx.URL(self.settings.origin)
        self._state = WorkerState.NEW

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def cache_name(self) -> str:
        return f"{self.settings.cache_prefix}{self.manifest.version}"

    @property
    def fallback_url(self) -> str:
        return str(self._origin.join(OFFLINE_FALLBACK_PATH))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> AssetCacheManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -- matching -----------------------------------------------------------

    def scope_path(self, url: httpx.URL | str) -> Optional[str]:
        """Return ``url``'s path relative to the origin, or None when it is out of scope."""
        target = httpx.URL(str(url))
        if (target.scheme, target.host, target.port) != (self._origin.scheme, self._origin.host, self._origin.port):
            return None
        base = self._origin.path if self._origin.path.endswith("/") else self._origin.path + "/"
        if not target.path.startswith(base):
            return None
        return target.path[len(base) :]

    def is_static_asset(self, path: str) -> bool:
        return any(p.search(path) for p in self._include) and not any(p.search(path) for p in self._exclude)

    def is_api_request(self, url: httpx.URL | str) -> bool:
        return httpx.URL(str(url)).path.startswith(self.settings.api_prefix)

    def should_cache(self, url: httpx.URL | str) -> bool:
        """Runtime caching rule: static, in scope, not denied and never under the API namespace."""
        if self.is_api_request(url):
            return False
        path = self.scope_path(url)
        return path is not None and self.is_static_asset(path)

    def classify(self, event: FetchEvent) -> RequestKind:
        if event.request.method.upper() != "GET":
            return RequestKind.PASSTHROUGH
        if event.mode is RequestMode.NAVIGATE:
            return RequestKind.NAVIGATION
        return RequestKind.SUBRESOURCE

    # -- lifecycle ----------------------------------------------------------

    def install_targets(self) -> list[tuple[str, ManifestAsset]]:
        targets = []
        for asset in self.manifest.assets:
            url = str(self._origin.join(asset.url))
            path = self.scope_path(url)
            if path is None or not self.is_static_asset(path):
                continue
            targets.append((url, asset))
        return targets

    async def install(self) -> AssetCache:
        """Populate this generation's cache; nothing is published unless every asset verifies."""
        self._state = WorkerState.INSTALLING
        targets = self.install_targets()
        _logger.info("assets.install_started", extra={"cache": self.cache_name, "assets": len(targets)})
        try:
            async with self.storage.staged(self.cache_name) as cache:
                for url, asset in targets:
                    await self._install_asset(cache, url, asset)
        except (AssetIntegrityFailure, NetworkUnavailable) as exc:
            self._state = WorkerState.REDUNDANT
            _logger.error("assets.install_failed", extra={"cache": self.cache_name, "error": str(exc)})
            raise
        except OSError as exc:
            self._state = WorkerState.REDUNDANT
            _logger.error("assets.install_failed", extra={"cache": self.cache_name, "error": str(exc)})
            raise StorageUnavailable(f"Could not write asset cache {self.cache_name}: {exc}") from exc
        self._state = WorkerState.INSTALLED
        _logger.info("assets.install_complete", extra={"cache": self.cache_name, "assets": len(targets)})
        return await self.storage.open(self.cache_name)

    async def _install_asset(self, cache: AssetCache, url: str, asset: ManifestAsset) -> None:
        request = httpx.Request("GET", url, headers={"Cache-Control": "no-cache"})
        try:
            response = await self.client.send(request)
        except httpx.HTTPError as exc:
            raise NetworkUnavailable(f"Failed to fetch {url}: {exc}", data={"url": url}) from exc
        if not response.is_success:
            raise AssetIntegrityFailure(url, f"HTTP {response.status_code}")
        if not asset.hash:
            raise AssetIntegrityFailure(url, "manifest entry has no integrity hash")
        if not verify_integrity(response.content, asset.hash):
            raise AssetIntegrityFailure(url, "content hash mismatch")
        await cache.put(request, response)

    async def activate(self) -> list[str]:
        """Delete every generation cache other than the current one; returns the deleted names."""
        if self._state is WorkerState.NEW and await self.storage.has(self.cache_name):
            # Installed by an earlier process.
            self._state = WorkerState.INSTALLED
        if self._state not in (WorkerState.INSTALLED, WorkerState.ACTIVE):
            raise RuntimeError(f"Cannot activate {self.cache_name} from state {self._state.value}")
        self._state = WorkerState.ACTIVATING
        deleted = []
        for name in await self.storage.keys():
            if name.startswith(self.settings.cache_prefix) and name != self.cache_name:
                if await self.storage.delete(name):
                    deleted.append(name)
        self._state = WorkerState.ACTIVE
        _logger.info("assets.activated", extra={"cache": self.cache_name, "deleted": deleted})
        return deleted

    # -- fetch --------------------------------------------------------------

    async def handle_fetch(self, event: FetchEvent) -> httpx.Response:
        kind = self.classify(event)
        if kind is RequestKind.PASSTHROUGH or self._state is not WorkerState.ACTIVE:
            return await self._passthrough(event.request)
        if kind is RequestKind.NAVIGATION:
            return await self._network_first(event.request)
        return await self._cache_first(event.request)

    async def _fetch(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self.client.send(request)
        except httpx.HTTPError as exc:
            raise NetworkUnavailable(f"Fetch failed for {request.url}: {exc}", data={"url": str(request.url)}) from exc

    async def _passthrough(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._fetch(request)
        except NetworkUnavailable as exc:
            _logger.info("assets.passthrough_failed", extra={"url": str(request.url), "error": str(exc)})
            return _terminal_response(503, NETWORK_ERROR_MESSAGE, request)

    async def _network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._fetch(request)
        except NetworkUnavailable as exc:
            _logger.info("assets.navigation_offline", extra={"url": str(request.url), "error": str(exc)})
            fallback = await self._match(self.fallback_url)
            if fallback is not None:
                return fallback
            return _terminal_response(503, OFFLINE_NAVIGATION_MESSAGE, request)
        if response.is_success and not self.is_api_request(request.url):
            await self._put(self.fallback_url, response)
        return response

    async def _cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = await self._match(request)
        if cached is not None:
            return cached
        try:
            response = await self._fetch(request)
        except NetworkUnavailable as exc:
            _logger.info("assets.fetch_failed", extra={"url": str(request.url), "error": str(exc)})
            return _terminal_response(408, NETWORK_ERROR_MESSAGE, request)
        if response.is_success and self.should_cache(request.url):
            await self._put(request, response)
        return response

    async def _match(self, key: httpx.Request | str) -> Optional[httpx.Response]:
        try:
            cache = await self.storage.open(self.cache_name)
            return await cache.match(key)
        except (OSError, ValueError, KeyError) as exc:
            _logger.warning("assets.cache_read_failed", extra={"cache": self.cache_name, "error": str(exc)})
            return None

    async def _put(self, key: httpx.Request | str, response: httpx.Response) -> None:
        try:
            cache = await self.storage.open(self.cache_name)
            await cache.put(key, response)
        except OSError as exc:
            _logger.warning("assets.cache_write_failed", extra={"cache": self.cache_name, "error": str(exc)})


async def build_asset_cache_manager(
    settings: Optional[AssetSettings] = None, *, client: Optional[httpx.AsyncClient] = None
) -> AssetCacheManager:
    resolved = settings or get_settings().assets
    manifest = await load_manifest(resolved, client=client)
    return AssetCacheManager(manifest, resolved, client=client)
