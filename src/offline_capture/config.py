"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")

# Bumped to 4 when the teachers collection was introduced.
DEFAULT_SCHEMA_VERSION: Final[int] = 4


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Local database settings."""

    url: str
    echo: bool
    schema_version: int
    # 0 waits until the other sessions close
    upgrade_blocked_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class AssetSettings:
    """Offline asset cache configuration."""

    cache_root: str
    cache_prefix: str
    data_cache_name: str
    origin: str
    manifest_path: str
    api_prefix: str
    fetch_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """Local worker host settings."""

    host: str
    port: int


@dataclass(slots=True, frozen=True)
class ConnectivitySettings:
    """Connectivity probe settings."""

    probe_url: str
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    database: DatabaseSettings
    assets: AssetSettings
    http: HttpSettings
    connectivity: ConnectivitySettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./offline_capture.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        schema_version=max(
            1,
            _int(
                _decouple_config("DATABASE_SCHEMA_VERSION", default=str(DEFAULT_SCHEMA_VERSION)),
                default=DEFAULT_SCHEMA_VERSION,
            ),
        ),
        upgrade_blocked_timeout_seconds=max(
            0.0,
            _float(_decouple_config("DATABASE_UPGRADE_BLOCKED_TIMEOUT_SECONDS", default="0"), default=0.0),
        ),
    )

    origin = _decouple_config("ASSET_ORIGIN", default="http://127.0.0.1:5000/").strip()
    if not origin.endswith("/"):
        origin += "/"
    api_prefix = "/" + _decouple_config("ASSET_API_PREFIX", default="/api/").strip().strip("/") + "/"

    asset_settings = AssetSettings(
        cache_root=_decouple_config("ASSET_CACHE_ROOT", default="./.offline_cache"),
        cache_prefix=_decouple_config("ASSET_CACHE_PREFIX", default="offline-cache-"),
        data_cache_name=_decouple_config("ASSET_DATA_CACHE_NAME", default="offline-data-cache-v1"),
        origin=origin,
        manifest_path=_decouple_config("ASSET_MANIFEST_PATH", default="service-worker-assets.js"),
        api_prefix=api_prefix,
        fetch_timeout_seconds=_float(_decouple_config("ASSET_FETCH_TIMEOUT_SECONDS", default="30"), default=30.0),
    )

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8780"), default=8780),
    )

    connectivity_settings = ConnectivitySettings(
        probe_url=_decouple_config("CONNECTIVITY_PROBE_URL", default="").strip() or origin,
        timeout_seconds=_float(_decouple_config("CONNECTIVITY_TIMEOUT_SECONDS", default="3"), default=3.0),
    )

    return Settings(
        environment=environment,
        database=database_settings,
        assets=asset_settings,
        http=http_settings,
        connectivity=connectivity_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
