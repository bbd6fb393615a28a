"""Module-level API used by application code; every call goes through the default database manager.

Records are returned as plain dicts so callers never hold ORM instances.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from .connectivity import get_connection_status, is_online
from .db import get_database_manager, init_db
from .errors import StorageUnavailable
from .store import student_store, teacher_store
from .sync import SyncStateTracker

__all__ = [
    "add_incident_report",
    "clear_synced_reports",
    "delete_database",
    "delete_report",
    "get_all_reports",
    "get_cached_students",
    "get_cached_teachers",
    "get_connection_status",
    "get_unsynced_reports",
    "init_db",
    "is_online",
    "mark_as_synced",
    "save_students",
    "save_teachers",
]


def _tracker() -> SyncStateTracker:
    return SyncStateTracker(manager=get_database_manager())


async def save_students(students: Iterable[Mapping[str, Any]]) -> int:
    """Replace the cached student snapshot; returns the number cached."""
    return await student_store(get_database_manager()).replace_all(students)


async def get_cached_students() -> list[dict[str, Any]]:
    return [s.to_record() for s in await student_store(get_database_manager()).get_all()]


async def save_teachers(teachers: Iterable[Mapping[str, Any]]) -> int:
    return await teacher_store(get_database_manager()).replace_all(teachers)


async def get_cached_teachers() -> list[dict[str, Any]]:
    return [t.to_record() for t in await teacher_store(get_database_manager()).get_all()]


async def add_incident_report(payload: Mapping[str, Any]) -> int:
    """Store a new pending report and return its id."""
    report = await _tracker().create_report(payload)
    if report.id is None:
        raise StorageUnavailable("Report was stored without a key")
    return report.id


async def get_unsynced_reports() -> list[dict[str, Any]]:
    return [r.to_record() for r in await _tracker().list_pending()]


async def get_all_reports() -> list[dict[str, Any]]:
    return [r.to_record() for r in await _tracker().list_all()]


async def mark_as_synced(report_id: int) -> dict[str, Any]:
    return (await _tracker().mark_synced(report_id)).to_record()


async def delete_report(report_id: int) -> None:
    await _tracker().delete_report(report_id)


async def clear_synced_reports() -> int:
    return await _tracker().purge_synced()


async def delete_database() -> None:
    await get_database_manager().destroy()
