"""Offline-first persistence and asset caching for field data capture."""

from __future__ import annotations

from .errors import (
    AssetIntegrityFailure,
    ErrorKind,
    NetworkUnavailable,
    OfflineStoreError,
    RecordNotFound,
    StorageCorrupted,
    StorageUnavailable,
    UpgradeBlocked,
)

__all__ = [
    "AssetIntegrityFailure",
    "ErrorKind",
    "NetworkUnavailable",
    "OfflineStoreError",
    "RecordNotFound",
    "StorageCorrupted",
    "StorageUnavailable",
    "UpgradeBlocked",
]
