"""Local worker host: serves the application through the offline asset cache."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from .assets import AssetCacheManager, FetchEvent, RequestMode, WorkerState, build_asset_cache_manager
from .config import Settings, get_settings
from .connectivity import get_connection_status
from .db import close_database
from .errors import ErrorKind, NetworkUnavailable, OfflineStoreError

_LOGGING_CONFIGURED = False

_logger = logging.getLogger(__name__)

# Stripped from proxied requests and responses; bodies are re-framed on each hop.
_HOP_HEADERS = frozenset(
    {"host", "connection", "keep-alive", "content-length", "transfer-encoding", "content-encoding", "upgrade"}
)

_ERROR_STATUS = {
    ErrorKind.RECORD_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UPGRADE_BLOCKED: status.HTTP_409_CONFLICT,
    ErrorKind.NETWORK_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.ASSET_INTEGRITY_FAILURE: status.HTTP_502_BAD_GATEWAY,
}


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    if settings.log_rich_enabled and not settings.log_json_enabled:
        from rich.logging import RichHandler

        logging.basicConfig(level=level, format="%(message)s", handlers=[RichHandler(rich_tracebacks=False)])
    else:
        logging.basicConfig(level=level)

    # aiosqlite logs every cursor operation at DEBUG; httpx logs every request at INFO.
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    class RecoverableErrorFilter(logging.Filter):
        """Drop tracebacks for recoverable errors (offline, blocked upgrade, bad asset).

        They are normal operating conditions for an offline-first client.
        """

        def filter(self, record: logging.LogRecord) -> bool:
            if not record.exc_info or record.exc_info[1] is None:
                return True
            exc = record.exc_info[1]
            recoverable = getattr(exc, "recoverable", False) or getattr(exc.__cause__, "recoverable", False)
            if recoverable:
                record.exc_info = None
                record.exc_text = None
                if record.levelno >= logging.ERROR:
                    record.levelno = logging.WARNING
                    record.levelname = "WARNING"
            return True

    logging.getLogger("offline_capture").addFilter(RecoverableErrorFilter())

    _LOGGING_CONFIGURED = True


def is_navigation_request(request: Request) -> bool:
    if request.headers.get("sec-fetch-mode", "").lower() == RequestMode.NAVIGATE.value:
        return True
    return request.method == "GET" and "text/html" in request.headers.get("accept", "")


async def _to_fetch_event(request: Request, origin: httpx.URL) -> FetchEvent:
    target = str(origin.join(request.url.path.lstrip("/")))
    if request.url.query:
        target = f"{target}?{request.url.query}"
    headers = [(k, v) for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS]
    body = await request.body()
    outgoing = httpx.Request(request.method, target, headers=headers, content=body or None)
    mode = RequestMode.NAVIGATE if is_navigation_request(request) else RequestMode.NO_CORS
    return FetchEvent(request=outgoing, mode=mode)


def _to_response(upstream: httpx.Response) -> Response:
    response = Response(content=upstream.content, status_code=upstream.status_code)
    for key, value in upstream.headers.multi_items():
        if key.lower() not in _HOP_HEADERS:
            response.headers.append(key, value)
    return response


async def _install_and_activate(manager: AssetCacheManager) -> None:
    try:
        if manager.state is WorkerState.NEW and await manager.storage.has(manager.cache_name):
            # This version was installed by an earlier run; adopt it without touching the network.
            _logger.info("http.asset_cache_reused", extra={"cache": manager.cache_name})
        else:
            await manager.install()
        await manager.activate()
    except OfflineStoreError as exc:
        # The worker stays REDUNDANT and passes requests through until a refresh succeeds.
        _logger.error("http.asset_install_failed", extra={"cache": manager.cache_name, "error": str(exc)})


def build_http_app(settings: Optional[Settings] = None, manager: Optional[AssetCacheManager] = None) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings)
    origin = httpx.URL(settings.assets.origin)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_manager = manager is None
        assets = manager
        if assets is None:
            try:
                assets = await build_asset_cache_manager(settings.assets)
            except (NetworkUnavailable, ValueError, OSError) as exc:
                _logger.error("http.manifest_unavailable", extra={"error": str(exc)})
        app.state.assets = assets
        app.state.owns_assets = owns_manager
        if assets is not None:
            await _install_and_activate(assets)
        try:
            yield
        finally:
            if owns_manager and app.state.assets is not None:
                await app.state.assets.aclose()
            await close_database()

    app = FastAPI(title="offline-capture worker host", lifespan=lifespan)

    @app.exception_handler(OfflineStoreError)
    async def _offline_error(request: Request, exc: OfflineStoreError) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=_ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR))

    def _assets(request: Request) -> AssetCacheManager:
        assets: Optional[AssetCacheManager] = getattr(request.app.state, "assets", None)
        if assets is None:
            raise NetworkUnavailable("Asset manifest unavailable; the worker is not installed")
        return assets

    @app.get("/_offline/health")
    async def health(request: Request) -> JSONResponse:
        assets: Optional[AssetCacheManager] = getattr(request.app.state, "assets", None)
        connection = await get_connection_status(settings, client=assets.client if assets is not None else None)
        return JSONResponse(
            {
                "state": assets.state.value if assets is not None else None,
                "cache": assets.cache_name if assets is not None else None,
                **connection,
            }
        )

    @app.post("/_offline/refresh")
    async def refresh(request: Request) -> JSONResponse:
        """Retry installation; an owned manager is rebuilt from a freshly loaded manifest.

        The current generation keeps serving unless the new one activates.
        """
        assets: Optional[AssetCacheManager] = getattr(request.app.state, "assets", None)
        if request.app.state.owns_assets:
            fresh = await build_asset_cache_manager(settings.assets)
            await _install_and_activate(fresh)
            if fresh.state is WorkerState.ACTIVE or assets is None:
                if assets is not None:
                    await assets.aclose()
                request.app.state.assets = assets = fresh
            else:
                await fresh.aclose()
        elif assets is not None and assets.state is not WorkerState.ACTIVE:
            await _install_and_activate(assets)
        if assets is None:
            raise NetworkUnavailable("Asset manifest unavailable; the worker is not installed")
        return JSONResponse({"state": assets.state.value, "cache": assets.cache_name})

    @app.api_route(
        "/{path:path}",
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        include_in_schema=False,
    )
    async def proxy(request: Request, path: str) -> Response:
        assets = _assets(request)
        event = await _to_fetch_event(request, origin)
        upstream = await assets.handle_fetch(event)
        structlog.get_logger("offline_capture.http").debug(
            "fetch", path=request.url.path, status=upstream.status_code, mode=event.mode.value
        )
        return _to_response(upstream)

    return app
