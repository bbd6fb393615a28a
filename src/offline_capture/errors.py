"""Error taxonomy shared by the storage layer and the asset cache."""

from __future__ import annotations

import sqlite3
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories surfaced by this package."""

    STORAGE_UNAVAILABLE = "storage_unavailable"
    STORAGE_CORRUPTED = "storage_corrupted"
    RECORD_NOT_FOUND = "record_not_found"
    UPGRADE_BLOCKED = "upgrade_blocked"
    NETWORK_UNAVAILABLE = "network_unavailable"
    ASSET_INTEGRITY_FAILURE = "asset_integrity_failure"


class OfflineStoreError(Exception):
    kind: ErrorKind = ErrorKind.STORAGE_UNAVAILABLE
    default_recoverable: bool = False

    def __init__(self, message: str, *, recoverable: Optional[bool] = None, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.kind.value,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class StorageUnavailable(OfflineStoreError):
    """The local database could not be opened or upgraded."""

    kind = ErrorKind.STORAGE_UNAVAILABLE


class StorageCorrupted(OfflineStoreError):
    """The database file is unreadable; it is destroyed and reopened once."""

    kind = ErrorKind.STORAGE_CORRUPTED
    default_recoverable = True


class RecordNotFound(OfflineStoreError):
    kind = ErrorKind.RECORD_NOT_FOUND

    def __init__(self, collection: str, key: Any) -> None:
        super().__init__(
            f"Record {key!r} not found in {collection}",
            data={"collection": collection, "key": key},
        )
        self.collection = collection
        self.key = key


class UpgradeBlocked(OfflineStoreError):
    """Other sessions hold the database open while a schema change is pending.

    Delivered to ``on_blocked`` listeners as an informational signal and only
    raised when a blocked-wait timeout is configured and expires.
    """

    kind = ErrorKind.UPGRADE_BLOCKED
    default_recoverable = True

    def __init__(self, old_version: int, new_version: Optional[int], blocking_sessions: int) -> None:
        target = "deletion" if new_version is None else f"version {new_version}"
        super().__init__(
            f"A database update to {target} is pending. "
            f"Please close other sessions of this application ({blocking_sessions} still open).",
            data={
                "old_version": old_version,
                "new_version": new_version,
                "blocking_sessions": blocking_sessions,
            },
        )
        self.old_version = old_version
        self.new_version = new_version
        self.blocking_sessions = blocking_sessions


class NetworkUnavailable(OfflineStoreError):
    kind = ErrorKind.NETWORK_UNAVAILABLE
    default_recoverable = True


class AssetIntegrityFailure(OfflineStoreError):
    """An asset failed verification during install; install is aborted."""

    kind = ErrorKind.ASSET_INTEGRITY_FAILURE
    default_recoverable = True

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Asset {url} failed verification: {reason}", data={"url": url, "reason": reason})
        self.url = url
        self.reason = reason


# SQLite primary result codes that mean the file itself is unusable.
_CORRUPTION_ERROR_NAMES = frozenset({"SQLITE_CORRUPT", "SQLITE_NOTADB"})


def _sqlite_error_name(exc: BaseException) -> Optional[str]:
    if not isinstance(exc, sqlite3.Error):
        return None
    name = getattr(exc, "sqlite_errorname", None)
    if not name:
        return None
    # Extended codes look like SQLITE_CORRUPT_VTAB; classify on the primary code.
    for primary in _CORRUPTION_ERROR_NAMES:
        if name == primary or name.startswith(primary + "_"):
            return primary
    return name


def is_corruption_error(exc: BaseException) -> bool:
    """Return True when the exception chain carries a SQLite corruption result code.

    Walks ``orig`` (SQLAlchemy DBAPI wrappers), ``__cause__`` and
    ``__context__``. Errors without a result code are never treated as
    corruption.
    """
    seen: set[int] = set()
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if _sqlite_error_name(current) in _CORRUPTION_ERROR_NAMES:
            return True
        for linked in (getattr(current, "orig", None), current.__cause__, current.__context__):
            if isinstance(linked, BaseException):
                pending.append(linked)
    return False
