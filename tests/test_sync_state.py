from __future__ import annotations

import pytest

from offline_capture import service
from offline_capture.errors import RecordNotFound, StorageUnavailable
from offline_capture.models import IncidentReport
from offline_capture.sync import SyncStateTracker


@pytest.mark.asyncio
async def test_report_lifecycle_from_pending_to_purged(default_manager):
    report_id = await service.add_incident_report({"incident": "A"})

    pending = await service.get_unsynced_reports()
    assert [r["id"] for r in pending] == [report_id]
    assert pending[0]["synced"] is False
    assert pending[0]["synced_at"] is None

    synced = await service.mark_as_synced(report_id)
    assert synced["synced"] is True
    assert synced["synced_at"] is not None

    all_reports = await service.get_all_reports()
    assert [(r["id"], r["synced"]) for r in all_reports] == [(report_id, True)]
    assert all_reports[0]["synced_at"] is not None
    assert await service.get_unsynced_reports() == []

    assert await service.clear_synced_reports() == 1
    assert await service.get_all_reports() == []


@pytest.mark.asyncio
async def test_ids_increase_and_are_not_reused_after_delete(manager):
    tracker = SyncStateTracker(manager=manager)
    first = await tracker.create_report({"n": 1})
    second = await tracker.create_report({"n": 2})

    await tracker.delete_report(second.id)
    third = await tracker.create_report({"n": 3})

    assert first.id < second.id < third.id


@pytest.mark.asyncio
async def test_pending_stream_skips_synced_reports(manager):
    tracker = SyncStateTracker(manager=manager)
    ids = [(await tracker.create_report({"n": n})).id for n in range(5)]
    await tracker.mark_synced(ids[1])
    await tracker.mark_synced(ids[3])

    streamed = [r.id async for r in tracker.iter_pending()]

    assert streamed == [ids[0], ids[2], ids[4]]


@pytest.mark.asyncio
async def test_purge_leaves_pending_reports(manager):
    tracker = SyncStateTracker(manager=manager)
    keep = await tracker.create_report({"keep": True})
    done = await tracker.create_report({"keep": False})
    await tracker.mark_synced(done.id)

    assert await tracker.purge_synced() == 1

    remaining = await tracker.list_all()
    assert [r.id for r in remaining] == [keep.id]
    assert remaining[0].payload == {"keep": True}


@pytest.mark.asyncio
async def test_mark_synced_twice_keeps_report_synced(manager):
    tracker = SyncStateTracker(manager=manager)
    report = await tracker.create_report({})

    once = await tracker.mark_synced(report.id)
    twice = await tracker.mark_synced(report.id)

    assert once.synced and twice.synced
    assert twice.synced_at >= once.synced_at


@pytest.mark.asyncio
async def test_unknown_report_ids_raise(manager):
    tracker = SyncStateTracker(manager=manager)
    pending = await tracker.create_report({"n": 1})
    await tracker.mark_synced((await tracker.create_report({"n": 2})).id)
    before_all = [r.to_record() for r in await tracker.list_all()]
    before_pending = [r.to_record() for r in await tracker.list_pending()]

    with pytest.raises(RecordNotFound):
        await tracker.mark_synced(404)
    with pytest.raises(RecordNotFound):
        await tracker.delete_report(404)

    assert [r.to_record() for r in await tracker.list_all()] == before_all
    assert [r.to_record() for r in await tracker.list_pending()] == before_pending
    assert [r["id"] for r in before_pending] == [pending.id]


@pytest.mark.asyncio
async def test_reference_data_snapshots_through_service(default_manager):
    await service.save_students([{"student_name": "A"}])
    await service.save_students([{"student_name": "C"}])
    await service.save_teachers([{"teacher_name": "T", "room": "4B"}])

    assert await service.get_cached_students() == [{"student_name": "C"}]
    assert await service.get_cached_teachers() == [{"room": "4B", "teacher_name": "T"}]


@pytest.mark.asyncio
async def test_delete_database_drops_everything(default_manager):
    await service.add_incident_report({"n": 1})
    await service.save_students([{"student_name": "A"}])

    await service.delete_database()

    assert await service.get_all_reports() == []
    assert await service.get_cached_students() == []


@pytest.mark.asyncio
async def test_add_report_without_assigned_key_is_unavailable(default_manager, monkeypatch):
    async def keyless_create(self, payload):
        return IncidentReport(payload=dict(payload))

    monkeypatch.setattr(SyncStateTracker, "create_report", keyless_create)

    with pytest.raises(StorageUnavailable):
        await service.add_incident_report({"incident": "A"})
