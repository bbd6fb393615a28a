"""Sync-state bookkeeping for incident reports.

Reports start pending and are marked synced by an external upload driver once
the server has confirmed them. Nothing here talks to the network, retries, or
expires a report: a report stays pending until ``mark_synced`` is called.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Optional

from sqlalchemy import delete
from sqlmodel import col, select

from .db import DatabaseManager
from .errors import RecordNotFound
from .models import IncidentReport, _utcnow_naive
from .store import AppendStore, report_store

_logger = logging.getLogger(__name__)

# Purged ids are deleted in batches to keep each statement's parameter list small.
_PURGE_BATCH_SIZE = 500


class SyncStateTracker:
    def __init__(self, store: Optional[AppendStore[IncidentReport]] = None, *, manager: Optional[DatabaseManager] = None):
        self.store = store or report_store(manager)

    async def create_report(self, payload: Mapping[str, Any]) -> IncidentReport:
        return await self.store.create(payload=dict(payload or {}))

    def iter_pending(self) -> AsyncIterator[IncidentReport]:
        """Stream pending reports through the ``synced`` index."""
        return self.store.scan(
            col(IncidentReport.synced).is_(False),
            order_by=(col(IncidentReport.synced), col(IncidentReport.id)),
        )

    async def list_pending(self) -> list[IncidentReport]:
        pending = [report async for report in self.iter_pending()]
        _logger.info("sync.pending_listed", extra={"count": len(pending)})
        return pending

    async def list_all(self) -> list[IncidentReport]:
        return await self.store.get_all()

    async def get_report(self, report_id: int) -> IncidentReport:
        return await self.store.get(report_id)

    async def mark_synced(self, report_id: int) -> IncidentReport:
        """Flag a report as uploaded and stamp the completion time.

        Calling it again on a synced report only refreshes ``synced_at``.
        """
        async with self.store.session() as session:
            report = await session.get(IncidentReport, report_id)
            if report is None:
                raise RecordNotFound(self.store.collection, report_id)
            report.synced = True
            report.synced_at = _utcnow_naive()
            session.add(report)
            await session.commit()
            await session.refresh(report)
        _logger.info("sync.marked_synced", extra={"report_id": report_id})
        return report

    async def delete_report(self, report_id: int) -> None:
        await self.store.delete(report_id)

    async def purge_synced(self) -> int:
        """Delete every synced report; pending reports are untouched.

        Only the ids of synced reports are collected, via the ``synced`` index.
        """
        async with self.store.session() as session:
            result = await session.stream_scalars(
                select(col(IncidentReport.id))
                .where(col(IncidentReport.synced).is_(True))
                .order_by(col(IncidentReport.synced), col(IncidentReport.id))
            )
            done_ids = [report_id async for report_id in result]
            for start in range(0, len(done_ids), _PURGE_BATCH_SIZE):
                batch = done_ids[start : start + _PURGE_BATCH_SIZE]
                await session.execute(delete(IncidentReport).where(col(IncidentReport.id).in_(batch)))
            await session.commit()
        _logger.info("sync.purged", extra={"count": len(done_ids)})
        return len(done_ids)
