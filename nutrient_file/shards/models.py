# -*- coding: utf-8 -*-
"""Shards — Pydantic models for client-side sync state."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field


class ShardLifecycle(str, Enum):
    pending = "pending"
    downloading = "downloading"
    validating = "validating"
    stored = "stored"
    error = "error"


# A retry re-enters ``downloading`` from ``error`` or from a stale ``stored`` row.
_TRANSITIONS: Dict[ShardLifecycle, FrozenSet[ShardLifecycle]] = {
    ShardLifecycle.pending: frozenset({ShardLifecycle.downloading, ShardLifecycle.error}),
    ShardLifecycle.downloading: frozenset({ShardLifecycle.validating, ShardLifecycle.error}),
    ShardLifecycle.validating: frozenset({ShardLifecycle.stored, ShardLifecycle.error}),
    ShardLifecycle.stored: frozenset({ShardLifecycle.downloading}),
    ShardLifecycle.error: frozenset({ShardLifecycle.downloading}),
}


def can_transition(current: ShardLifecycle, target: ShardLifecycle) -> bool:
    return target in _TRANSITIONS[current]


class ShardStatus(BaseModel):
    """Per-shard sync record, keyed by the downloaded artifact's file name."""

    file: str
    shard_id: str
    checksum: str
    state: ShardLifecycle = ShardLifecycle.pending
    record_count: int = 0
    byte_size: int = 0
    downloaded_at: Optional[str] = None
    validated_at: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    updated_at: Optional[str] = None

    def advance(self, target: ShardLifecycle, *, at: Optional[str] = None) -> "ShardStatus":
        if not can_transition(self.state, target):
            raise ValueError(f"Illegal shard transition {self.state.value} -> {target.value} for {self.file}")
        self.state = target
        self.updated_at = at
        return self


class ManifestVersion(BaseModel):
    version: str
    generated_at: Optional[str] = None
    total_records: int = 0
    total_bytes: int = 0
    shards_loaded: int = 0
    shards_total: int = 0
    installed_at: Optional[str] = None


class LoadStatus(str, Enum):
    idle = "idle"
    checking = "checking"
    downloading = "downloading"
    validating = "validating"
    complete = "complete"
    error = "error"


class LoadProgress(BaseModel):
    current_shard: int = 0
    total_shards: int = 0
    current_shard_name: Optional[str] = None
    bytes_downloaded: int = 0
    total_bytes: int = 0
    records_loaded: int = 0
    total_records: int = 0
    status: LoadStatus = LoadStatus.idle
    error_message: Optional[str] = None


class UpdateCheck(BaseModel):
    needs_update: bool
    remote_version: str
    local_version: Optional[str] = None
    generated_at: Optional[str] = None
    total_records: int = 0
    total_bytes: int = 0
    shards_total: int = 0


class QuotaInfo(BaseModel):
    usage: int = Field(0, ge=0)
    quota: int = Field(0, ge=0)
    available: int = Field(0, ge=0)
    percent_used: float = Field(0.0, ge=0)
    has_enough_space: bool = True
    estimated_space_needed: int = Field(0, ge=0)


class SyncSummary(BaseModel):
    version: str
    shards_total: int
    shards_downloaded: int
    shards_skipped: int
    records_loaded: int
