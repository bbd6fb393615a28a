"""Keyed-collection stores on top of the database manager.

Two write patterns share one read surface:

* ``AppendStore`` always creates a new record under a store-assigned key.
* ``ReplaceAllStore`` discards the previous snapshot and inserts the new one
  in a single transaction.

By-key reads and deletes of an absent key raise ``RecordNotFound``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from .db import DatabaseManager, get_database_manager
from .errors import RecordNotFound, StorageUnavailable
from .models import IncidentReport, Student, Teacher

_logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


class EntityStore(Generic[ModelT]):
    """Read and delete operations over one table."""

    def __init__(self, model: type[ModelT], manager: Optional[DatabaseManager] = None) -> None:
        self.model = model
        self._manager = manager

    @property
    def manager(self) -> DatabaseManager:
        return self._manager or get_database_manager()

    @property
    def collection(self) -> str:
        return str(self.model.__tablename__)

    @property
    def key_name(self) -> str:
        table = self.model.__table__  # type: ignore[attr-defined]
        return next(iter(table.primary_key.columns)).name

    @property
    def _key_column(self) -> Any:
        return getattr(self.model, self.key_name)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.manager.session() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Storage operation on {self.collection} failed: {exc}") from exc

    async def get_all(self) -> list[ModelT]:
        async with self.session() as session:
            result = await session.execute(select(self.model).order_by(self._key_column))
            records = list(result.scalars().all())
        _logger.debug("store.get_all", extra={"collection": self.collection, "count": len(records)})
        return records

    async def get(self, key: Any) -> ModelT:
        async with self.session() as session:
            record = await session.get(self.model, key)
        if record is None:
            raise RecordNotFound(self.collection, key)
        return record

    async def count(self) -> int:
        async with self.session() as session:
            result = await session.execute(select(func.count()).select_from(self.model))
            return int(result.scalar_one())

    async def delete(self, key: Any) -> None:
        async with self.session() as session:
            record = await session.get(self.model, key)
            if record is None:
                raise RecordNotFound(self.collection, key)
            await session.delete(record)
            await session.commit()
        _logger.info("store.deleted", extra={"collection": self.collection, "key": key})

    async def scan(self, *criteria: Any, order_by: Optional[Iterable[Any]] = None) -> AsyncIterator[ModelT]:
        """Stream records matching ``criteria`` in index order.

        Rows are fetched lazily from a server-side cursor; the iterator can be
        consumed once.
        """
        stmt = select(self.model)
        if criteria:
            stmt = stmt.where(*criteria)
        stmt = stmt.order_by(*(order_by if order_by is not None else (self._key_column,)))
        async with self.session() as session:
            result = await session.stream_scalars(stmt)
            async for record in result:
                yield record


class AppendStore(EntityStore[ModelT]):
    """Append-create collection: keys are assigned by the database and never reused."""

    async def create(self, **fields: Any) -> ModelT:
        if fields.get(self.key_name) is not None:
            raise ValueError(f"Keys in {self.collection} are assigned by the store")
        fields.pop(self.key_name, None)
        record = self.model(**fields)
        async with self.session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        _logger.info(
            "store.created",
            extra={"collection": self.collection, "key": getattr(record, self.key_name)},
        )
        return record


class ReplaceAllStore(EntityStore[ModelT]):
    """Snapshot collection keyed by a natural key; rows keep the rest of the item as ``data``."""

    def _build(self, item: Mapping[str, Any]) -> ModelT:
        key_name = self.key_name
        key = item.get(key_name)
        if key is None or (isinstance(key, str) and not key.strip()):
            raise ValueError(f"Item for {self.collection} is missing its {key_name!r} key")
        data = {name: value for name, value in item.items() if name != key_name}
        return self.model(**{key_name: str(key), "data": data})

    async def replace_all(self, items: Iterable[Mapping[str, Any]]) -> int:
        """Clear the collection and insert ``items``; returns the number stored.

        Duplicate keys in ``items`` collapse to the last occurrence.
        """
        by_key: dict[str, ModelT] = {}
        for item in items or ():
            record = self._build(item)
            by_key[getattr(record, self.key_name)] = record
        async with self.session() as session:
            await session.execute(delete(self.model))
            session.add_all(list(by_key.values()))
            await session.commit()
        _logger.info("store.replaced", extra={"collection": self.collection, "count": len(by_key)})
        return len(by_key)


def report_store(manager: Optional[DatabaseManager] = None) -> AppendStore[IncidentReport]:
    return AppendStore(IncidentReport, manager)


def student_store(manager: Optional[DatabaseManager] = None) -> ReplaceAllStore[Student]:
    return ReplaceAllStore(Student, manager)


def teacher_store(manager: Optional[DatabaseManager] = None) -> ReplaceAllStore[Teacher]:
    return ReplaceAllStore(Teacher, manager)
