"""Database lifecycle: lazy open, upgrades, corruption recovery and session coordination."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest
from sqlalchemy import text

from offline_capture.config import get_settings
from offline_capture.db import DatabaseManager, VersionChangeEvent
from offline_capture.errors import StorageCorrupted, StorageUnavailable, UpgradeBlocked
from offline_capture.store import report_store


def _manager(version: int, *, timeout: float = 0.0, close_on_version_change: bool = True) -> DatabaseManager:
    settings = replace(
        get_settings().database,
        schema_version=version,
        upgrade_blocked_timeout_seconds=timeout,
    )
    return DatabaseManager(settings, close_on_version_change=close_on_version_change)


async def _names(manager: DatabaseManager, kind: str) -> set[str]:
    async with manager.session() as session:
        rows = await session.execute(text("SELECT name FROM sqlite_master WHERE type = :kind"), {"kind": kind})
        return {row[0] for row in rows}


@pytest.mark.asyncio
async def test_open_is_lazy(manager):
    assert manager.path is not None
    assert not manager.is_open
    assert not manager.path.exists()

    handle = await manager.acquire()

    assert manager.is_open
    assert manager.path.exists()
    assert handle.version == get_settings().database.schema_version
    assert await manager.acquire() is handle


@pytest.mark.asyncio
async def test_concurrent_acquire_shares_one_open(manager, monkeypatch):
    calls = 0
    original = manager._open_once

    async def counting_open():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return await original()

    monkeypatch.setattr(manager, "_open_once", counting_open)

    handles = await asyncio.gather(*(manager.acquire() for _ in range(5)))

    assert calls == 1
    assert all(h is handles[0] for h in handles)


@pytest.mark.asyncio
async def test_failed_open_with_no_waiters_is_retried(manager, monkeypatch):
    original = manager._open_once
    release = asyncio.Event()

    async def failing_open():
        await release.wait()
        raise StorageUnavailable("disk went away")

    monkeypatch.setattr(manager, "_open_once", failing_open)
    waiter = asyncio.create_task(manager.acquire())
    await asyncio.sleep(0)
    opening = manager._opening
    assert opening is not None

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    release.set()
    with pytest.raises(StorageUnavailable):
        await opening

    assert manager._opening is None
    monkeypatch.setattr(manager, "_open_once", original)
    handle = await manager.acquire()
    assert handle.version == get_settings().database.schema_version


@pytest.mark.asyncio
async def test_schema_has_collections_and_indexes(manager):
    tables = await _names(manager, "table")
    indexes = await _names(manager, "index")

    assert {"reports", "students", "teachers"} <= tables
    assert {"idx_reports_timestamp", "idx_reports_synced"} <= indexes
    async with manager.session() as session:
        version = (await session.execute(text("PRAGMA user_version"))).scalar_one()
    assert version == 4


@pytest.mark.asyncio
async def test_upgrade_adds_missing_collection_and_keeps_data(isolated_env):
    old = _manager(3)
    report = await report_store(old).create(payload={"incident": "fall"})
    async with old.session() as session:
        await session.execute(text("DROP TABLE teachers"))
        await session.commit()
    await old.close()

    new = _manager(4)
    try:
        handle = await new.acquire()
        assert handle.version == 4
        assert "teachers" in await _names(new, "table")
        kept = await report_store(new).get(report.id)
        assert kept.payload == {"incident": "fall"}
    finally:
        await new.close()


@pytest.mark.asyncio
async def test_stored_version_newer_than_requested_is_unavailable(isolated_env):
    current = _manager(4)
    await current.acquire()
    await current.close()

    older = _manager(3)
    with pytest.raises(StorageUnavailable):
        await older.acquire()
    assert not older.is_open


@pytest.mark.asyncio
async def test_corrupted_file_is_deleted_and_recreated(manager):
    path: Path = manager.path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"definitely not a sqlite database " * 64)

    handle = await manager.acquire()

    assert handle.version == 4
    assert path.read_bytes().startswith(b"SQLite format 3\x00")
    assert await report_store(manager).count() == 0


@pytest.mark.asyncio
async def test_second_failure_after_recovery_is_unavailable(manager, monkeypatch):
    calls = 0
    original = manager._open_once

    async def failing_open():
        nonlocal calls
        calls += 1
        if calls <= 2:
            raise StorageCorrupted("still broken")
        return await original()

    monkeypatch.setattr(manager, "_open_once", failing_open)

    with pytest.raises(StorageUnavailable):
        await manager.acquire()
    assert calls == 2
    assert not manager.is_open

    # A failed open is not cached; the next caller tries again.
    handle = await manager.acquire()
    assert calls == 3
    assert handle.version == 4


@pytest.mark.asyncio
async def test_version_change_closes_outdated_session(isolated_env):
    outdated = _manager(3)
    seen: list[VersionChangeEvent] = []
    outdated.on_version_change(seen.append)
    await outdated.acquire()

    upgraded = _manager(4)
    try:
        await upgraded.acquire()

        assert seen == [VersionChangeEvent(old_version=3, new_version=4)]
        assert not outdated.is_open
        with pytest.raises(StorageUnavailable):
            await outdated.acquire()
    finally:
        await upgraded.close()
        await outdated.close()


@pytest.mark.asyncio
async def test_upgrade_blocked_times_out(isolated_env):
    holder = _manager(3, close_on_version_change=False)
    await holder.acquire()
    upgrader = _manager(4, timeout=0.2)
    signals: list[UpgradeBlocked] = []
    upgrader.on_blocked(signals.append)

    try:
        with pytest.raises(UpgradeBlocked) as excinfo:
            await upgrader.acquire()
        assert "close other sessions" in str(excinfo.value).lower()
        assert excinfo.value.blocking_sessions == 1
        assert len(signals) == 1
        assert holder.is_open
        assert not upgrader.is_open
    finally:
        await holder.close()
        await upgrader.close()


@pytest.mark.asyncio
async def test_blocked_upgrade_proceeds_once_other_session_closes(isolated_env):
    holder = _manager(3, close_on_version_change=False)
    await holder.acquire()
    upgrader = _manager(4)
    blocked = asyncio.Event()

    async def on_blocked(signal: UpgradeBlocked) -> None:
        blocked.set()

    upgrader.on_blocked(on_blocked)
    opening = asyncio.create_task(upgrader.acquire())
    try:
        await asyncio.wait_for(blocked.wait(), timeout=5)
        assert not opening.done()

        await holder.close()
        handle = await asyncio.wait_for(opening, timeout=5)

        assert handle.version == 4
    finally:
        if not opening.done():
            opening.cancel()
        await upgrader.close()


@pytest.mark.asyncio
async def test_destroy_removes_file_and_closes_other_sessions(isolated_env):
    first = _manager(4)
    second = _manager(4)
    seen: list[VersionChangeEvent] = []
    second.on_version_change(seen.append)
    await report_store(first).create(payload={"n": 1})
    await second.acquire()

    await first.destroy()

    assert not first.path.exists()
    assert not second.is_open
    assert seen == [VersionChangeEvent(old_version=4, new_version=None)]

    try:
        assert await report_store(first).count() == 0
    finally:
        await first.close()
        await second.close()


@pytest.mark.asyncio
async def test_closed_handle_refuses_sessions(manager):
    handle = await manager.acquire()
    await manager.close()

    assert handle.is_closed
    with pytest.raises(StorageUnavailable):
        async with handle.session():
            pass
