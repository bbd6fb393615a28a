"""SQLModel tables for incident reports and the reference data caches."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Optional

from sqlalchemy import Column, Index
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info. Using naive UTC datetimes
    throughout keeps comparisons consistent.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


class IncidentReport(SQLModel, table=True):
    """A captured report waiting for (or done with) upload."""

    __tablename__ = "reports"
    __table_args__ = (
        Index("idx_reports_timestamp", "timestamp"),
        Index("idx_reports_synced", "synced"),
        # AUTOINCREMENT: keys are never reused after deletes
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, server_default="{}"),
    )
    timestamp: datetime = Field(default_factory=_utcnow_naive)
    synced: bool = Field(default=False)
    synced_at: Optional[datetime] = Field(default=None)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payload": dict(self.payload or {}),
            "timestamp": _iso(self.timestamp),
            "synced": self.synced,
            "synced_at": _iso(self.synced_at),
        }


class Student(SQLModel, table=True):
    """Last known server snapshot of one student, keyed by name."""

    __tablename__ = "students"
    natural_key: ClassVar[str] = "student_name"

    student_name: str = Field(primary_key=True, max_length=255)
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, server_default="{}"),
    )

    def to_record(self) -> dict[str, Any]:
        return {**(self.data or {}), "student_name": self.student_name}


class Teacher(SQLModel, table=True):
    __tablename__ = "teachers"
    natural_key: ClassVar[str] = "teacher_name"

    teacher_name: str = Field(primary_key=True, max_length=255)
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, server_default="{}"),
    )

    def to_record(self) -> dict[str, Any]:
        return {**(self.data or {}), "teacher_name": self.teacher_name}
