"""Connectivity status probe."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .config import Settings, get_settings

_logger = logging.getLogger(__name__)


async def is_online(settings: Optional[Settings] = None, *, client: Optional[httpx.AsyncClient] = None) -> bool:
    """Return True when the probe URL answers at all (any HTTP status counts)."""
    resolved = settings or get_settings()
    probe_url = resolved.connectivity.probe_url
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=resolved.connectivity.timeout_seconds)
    try:
        await http_client.head(probe_url, headers={"Cache-Control": "no-cache"})
    except httpx.HTTPError as exc:
        _logger.info("connectivity.offline", extra={"probe_url": probe_url, "error": type(exc).__name__})
        return False
    finally:
        if owns_client:
            await http_client.aclose()
    return True


async def get_connection_status(
    settings: Optional[Settings] = None, *, client: Optional[httpx.AsyncClient] = None
) -> dict[str, Any]:
    online = await is_online(settings, client=client)
    return {
        "online": online,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
