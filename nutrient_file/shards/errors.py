# -*- coding: utf-8 -*-
"""Shards — exception hierarchy for dataset sync and local storage."""

from __future__ import annotations

import errno
import sqlite3
from typing import Optional


class DatasetSyncError(RuntimeError):
    """Base error for anything that aborts a dataset load."""


class ManifestFetchError(DatasetSyncError):
    pass


class ShardDownloadError(DatasetSyncError):
    def __init__(self, file: str, message: str) -> None:
        super().__init__(f"{file}: {message}")
        self.file = file


class SyncInProgressError(DatasetSyncError):
    """Another ``load_dataset`` call on the same synchronizer has not finished."""


class ShardValidationError(DatasetSyncError):
    """Checksum, record-count or size check failed for a downloaded shard."""

    def __init__(self, file: str, reason: str, message: str) -> None:
        super().__init__(f"{file}: {message}")
        self.file = file
        self.reason = reason


class StorageError(DatasetSyncError):
    pass


class StorageQuotaError(StorageError):
    pass


class StoragePermissionError(StorageError):
    pass


def classify_storage_error(exc: BaseException, action: Optional[str] = None) -> StorageError:
    """Map a low-level failure to the storage error a caller can act on."""
    prefix = f"{action} failed: " if action else ""
    message = f"{prefix}{exc}"
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, PermissionError):
        return StoragePermissionError(message)
    if isinstance(exc, OSError) and exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return StorageQuotaError(message)
    if isinstance(exc, sqlite3.Error):
        text = str(exc).lower()
        if "database or disk is full" in text or "disk quota" in text:
            return StorageQuotaError(message)
        if "readonly" in text or "read-only" in text or "unable to open" in text or "permission" in text:
            return StoragePermissionError(message)
    return StorageError(message)
