import contextlib
import json
from pathlib import Path

import pytest
import pytest_asyncio

from offline_capture.config import clear_settings_cache, get_settings
from offline_capture.db import DatabaseManager, close_database, reset_database_state


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point the database, cache root and origin at test locations and reset cached state."""
    db_path: Path = tmp_path / "capture.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("DATABASE_UPGRADE_BLOCKED_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("ASSET_CACHE_ROOT", str(tmp_path / "caches"))
    monkeypatch.setenv("ASSET_ORIGIN", "https://app.example/")
    monkeypatch.setenv("ASSET_MANIFEST_PATH", str(tmp_path / "service-worker-assets.js"))
    monkeypatch.setenv("CONNECTIVITY_PROBE_URL", "http://127.0.0.1:9/")
    monkeypatch.setenv("CONNECTIVITY_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield tmp_path
    finally:
        reset_database_state()
        clear_settings_cache()


@pytest_asyncio.fixture
async def manager(isolated_env):
    """A database manager on the isolated database, closed after the test."""
    db_manager = DatabaseManager(get_settings().database)
    try:
        yield db_manager
    finally:
        await db_manager.close()


@pytest_asyncio.fixture
async def default_manager(isolated_env):
    """Closes the process-wide manager inside the test's event loop."""
    try:
        yield
    finally:
        await close_database()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()


@pytest.fixture
def write_manifest(isolated_env):
    """Write an asset manifest at ASSET_MANIFEST_PATH (script form by default)."""

    def _write(version: str, assets: list[dict[str, str]], *, script: bool = True) -> Path:
        path = Path(get_settings().assets.manifest_path)
        body = json.dumps({"assets": assets, "version": version}, indent=2)
        path.write_text(f"self.assetsManifest = {body};\n" if script else body, encoding="utf-8")
        return path

    return _write
