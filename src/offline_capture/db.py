"""Async lifecycle management for the versioned local database.

Lifecycle of a connection:
- Opened lazily on the first ``acquire()``; concurrent callers share one in-flight open
- Schema version kept in ``PRAGMA user_version``; a higher requested version runs an
  additive upgrade (missing tables are created, existing ones are never touched)
- A corrupted file is deleted and reopened once; a second failure is fatal
- Managers sharing a database file form an "origin": a version bump in one notifies the
  others, which close by default; sessions that stay open block the upgrade until they close
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings
from .errors import OfflineStoreError, StorageCorrupted, StorageUnavailable, UpgradeBlocked, is_corruption_error
from .models import IncidentReport, Student, Teacher

_logger = logging.getLogger(__name__)

# Every collection the current schema version expects to exist.
SCHEMA_MODELS: tuple[type[SQLModel], ...] = (IncidentReport, Student, Teacher)


@dataclass(slots=True, frozen=True)
class VersionChangeEvent:
    """Sent to open sessions when another session upgrades or deletes the database."""

    old_version: int
    new_version: Optional[int]  # None when the database is being deleted


VersionChangeListener = Callable[[VersionChangeEvent], Union[Awaitable[None], None]]
BlockedListener = Callable[[UpgradeBlocked], Union[Awaitable[None], None]]


@dataclass(eq=False)
class DatabaseHandle:
    """One open connection (engine + session factory) at a given schema version."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    version: int
    path: Optional[Path]
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_closed(self) -> bool:
        return self.closed.is_set()

    async def close(self) -> None:
        if self.closed.is_set():
            return
        try:
            await self.engine.dispose()
        finally:
            self.closed.set()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide an async session with guaranteed cleanup, even under cancellation."""
        if self.is_closed:
            raise StorageUnavailable("Database handle is closed")
        session = self.session_factory()
        try:
            yield session
        finally:
            close_task = asyncio.create_task(session.close())
            try:
                await asyncio.shield(close_task)
            except BaseException:
                with suppress(BaseException):
                    await close_task
                raise


def _sqlite_file_path(url: str) -> Optional[Path]:
    try:
        parsed = make_url(url)
    except ArgumentError:
        return None
    if parsed.get_backend_name() != "sqlite":
        return None
    db_path = parsed.database
    if not db_path or db_path == ":memory:":
        return None
    return Path(db_path).expanduser()


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Return the SQLite file backing the configured database, or None for in-memory/non-SQLite URLs."""
    resolved = settings or get_settings()
    return _sqlite_file_path(resolved.database.url)


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async engine with SQLite tuned for a single-user local store.

    - journal_mode=WAL: readers are not blocked while a write commits
    - synchronous=NORMAL: durable with WAL, cheaper than FULL
    - busy_timeout=30000: wait on locks held by other sessions instead of failing
    """
    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # SQLite returns "unable to open database file" when the directory is missing.
        db_path = _sqlite_file_path(settings.url)
        if db_path is not None:
            db_path.resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {
            "timeout": 30.0,
            "check_same_thread": False,  # Required for async SQLite
        }

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
            finally:
                cursor.close()

    return engine


def _probe_sqlite_file(path: Path) -> None:
    """Read the header and schema table through a short-lived stdlib connection.

    An unreadable file raises the driver error here, before the async engine
    holds a connection to it.
    """
    if not path.exists():
        return
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("PRAGMA user_version").fetchone()
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    finally:
        conn.close()


async def _read_schema_version(engine: AsyncEngine) -> int:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("PRAGMA user_version")
        return int(result.scalar_one())


async def _upgrade_schema(engine: AsyncEngine, version: int) -> None:
    """Create every missing collection, then record the new version.

    The version is written last, so an interrupted upgrade is simply re-run on
    the next open; ``create_all`` skips tables that already exist.
    """
    tables = [model.__table__ for model in SCHEMA_MODELS]  # type: ignore[attr-defined]
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, tables=tables, checkfirst=True))
        await conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


# Open managers per database file, keyed by resolved path.
_ORIGINS: dict[str, set["DatabaseManager"]] = {}


class DatabaseManager:
    """Owns the single connection to the local database for one execution context."""

    def __init__(self, settings: DatabaseSettings | None = None, *, close_on_version_change: bool = True) -> None:
        self._settings = settings or get_settings().database
        self._close_on_version_change = close_on_version_change
        self._handle: DatabaseHandle | None = None
        self._opening: asyncio.Task[DatabaseHandle] | None = None
        self._lock: asyncio.Lock | None = None
        self._version_listeners: list[VersionChangeListener] = []
        self._blocked_listeners: list[BlockedListener] = []

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def path(self) -> Path | None:
        return _sqlite_file_path(self._settings.url)

    @property
    def is_open(self) -> bool:
        return self._handle is not None and not self._handle.is_closed

    @property
    def _origin_key(self) -> str | None:
        path = self.path
        return str(path.resolve()) if path is not None else None

    def on_version_change(self, listener: VersionChangeListener) -> None:
        self._version_listeners.append(listener)

    def on_blocked(self, listener: BlockedListener) -> None:
        """Register a listener for the informational "close other sessions" condition."""
        self._blocked_listeners.append(listener)

    async def acquire(self) -> DatabaseHandle:
        """Return the shared handle, opening it if needed.

        Concurrent callers await the same open task, so at most one open is in
        flight. A failed open is not cached: the next call tries again.
        """
        handle = self._handle
        if handle is not None and not handle.is_closed:
            return handle
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            handle = self._handle
            if handle is not None and not handle.is_closed:
                return handle
            if self._opening is None:
                self._opening = asyncio.create_task(self._open())
                self._opening.add_done_callback(self._open_finished)
            opening = self._opening
        return await asyncio.shield(opening)

    def _open_finished(self, task: asyncio.Task[DatabaseHandle]) -> None:
        if self._opening is task:
            self._opening = None
        if not task.cancelled() and task.exception() is not None:
            _logger.debug("db.open_failed", extra={"url": self._settings.url, "error": str(task.exception())})

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        handle = await self.acquire()
        async with handle.session() as session:
            yield session

    async def close(self) -> None:
        handle = self._handle
        self._handle = None
        self._unregister()
        if handle is not None:
            await handle.close()
            _logger.info("db.closed", extra={"url": self._settings.url})

    async def destroy(self) -> None:
        """Close this session, ask the others to close, and delete the database file."""
        await self.close()
        await self._notify_others(VersionChangeEvent(old_version=self._settings.schema_version, new_version=None))
        await self._delete_files()
        _logger.info("db.deleted", extra={"url": self._settings.url})

    async def _open(self) -> DatabaseHandle:
        try:
            handle = await self._open_once()
        except StorageCorrupted as exc:
            _logger.warning(
                "db.corruption_detected",
                extra={"url": self._settings.url, "error": str(exc)[:200]},
            )
            await self._delete_files()
            try:
                handle = await self._open_once()
            except UpgradeBlocked:
                raise
            except OfflineStoreError as retry_exc:
                raise StorageUnavailable(f"Failed to recover database: {retry_exc}") from retry_exc
            _logger.info("db.recovered", extra={"url": self._settings.url})
        self._handle = handle
        self._register()
        return handle

    async def _open_once(self) -> DatabaseHandle:
        requested = self._settings.schema_version
        engine: AsyncEngine | None = None
        try:
            if self.path is not None:
                await asyncio.to_thread(_probe_sqlite_file, self.path)
            engine = _build_engine(self._settings)
            stored = await _read_schema_version(engine)
            if stored > requested:
                raise StorageUnavailable(
                    f"Stored schema version {stored} is newer than requested version {requested}",
                    data={"stored_version": stored, "requested_version": requested},
                )
            if stored < requested:
                _logger.info("db.upgrade_needed", extra={"old_version": stored, "new_version": requested})
                await self._notify_others(VersionChangeEvent(old_version=stored, new_version=requested))
                await _upgrade_schema(engine, requested)
        except OfflineStoreError:
            if engine is not None:
                await engine.dispose()
            raise
        except (SQLAlchemyError, sqlite3.Error, OSError) as exc:
            if engine is not None:
                with suppress(Exception):
                    await engine.dispose()
            if is_corruption_error(exc):
                raise StorageCorrupted(f"Database corruption detected: {exc}") from exc
            raise StorageUnavailable(f"Failed to open database: {exc}") from exc

        handle = DatabaseHandle(
            engine=engine,
            session_factory=async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession),
            version=requested,
            path=self.path,
        )
        _logger.info("db.opened", extra={"url": self._settings.url, "version": requested})
        return handle

    async def _handle_version_change(self, change: VersionChangeEvent) -> None:
        for listener in list(self._version_listeners):
            await _maybe_await(listener(change))
        if self._close_on_version_change:
            await self.close()
            _logger.info(
                "db.outdated_closed",
                extra={"old_version": change.old_version, "new_version": change.new_version},
            )

    async def _notify_others(self, change: VersionChangeEvent) -> None:
        for other in self._others():
            await other._handle_version_change(change)

        blocking = [handle for handle in (m._handle for m in self._others()) if handle is not None]
        if not blocking:
            return
        blocked = UpgradeBlocked(change.old_version, change.new_version, len(blocking))
        _logger.warning(
            "db.upgrade_blocked",
            extra={"new_version": change.new_version, "blocking_sessions": len(blocking)},
        )
        for listener in list(self._blocked_listeners):
            await _maybe_await(listener(blocked))

        waiters = [asyncio.ensure_future(handle.closed.wait()) for handle in blocking]
        timeout = self._settings.upgrade_blocked_timeout_seconds or None
        _done, pending = await asyncio.wait(waiters, timeout=timeout)
        for waiter in pending:
            waiter.cancel()
        if pending:
            raise blocked
        _logger.info("db.upgrade_unblocked", extra={"new_version": change.new_version})

    def _others(self) -> list[DatabaseManager]:
        key = self._origin_key
        if key is None:
            return []
        return [m for m in _ORIGINS.get(key, ()) if m is not self]

    def _register(self) -> None:
        key = self._origin_key
        if key is not None:
            _ORIGINS.setdefault(key, set()).add(self)

    def _unregister(self) -> None:
        key = self._origin_key
        if key is None:
            return
        members = _ORIGINS.get(key)
        if members is not None:
            members.discard(self)
            if not members:
                _ORIGINS.pop(key, None)

    async def _delete_files(self) -> None:
        path = self.path
        if path is None:
            return

        def _unlink_all() -> None:
            for suffix in ("", "-wal", "-shm", "-journal"):
                with suppress(FileNotFoundError):
                    Path(f"{path}{suffix}").unlink()

        await asyncio.to_thread(_unlink_all)


_default_manager: DatabaseManager | None = None


def get_database_manager(settings: Settings | None = None) -> DatabaseManager:
    """Return the process-wide default manager, creating it on first use."""
    global _default_manager
    if _default_manager is None:
        resolved = settings or get_settings()
        _default_manager = DatabaseManager(resolved.database)
    return _default_manager


async def init_db(settings: Settings | None = None) -> DatabaseHandle:
    return await get_database_manager(settings).acquire()


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_database_manager().session() as session:
        yield session


async def close_database() -> None:
    if _default_manager is not None:
        await _default_manager.close()


def reset_database_state() -> None:
    """Test helper to drop the default manager and any registered sessions."""
    global _default_manager
    manager = _default_manager
    _default_manager = None
    handle = manager._handle if manager is not None else None
    if handle is not None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            with suppress(Exception):
                asyncio.run(handle.engine.dispose())
        else:
            # Can't block inside a running loop; fall back to sync pool disposal.
            with suppress(Exception):
                handle.engine.sync_engine.dispose()
    _ORIGINS.clear()
    clear_settings_cache()
