# -*- coding: utf-8 -*-
"""Shards — sequential, resumable dataset synchronization.

For each shard in manifest order:

    pending -> downloading -> validating -> stored
    (any non-terminal state) -> error

A shard already ``stored`` with the manifest's checksum is skipped, so rerunning
after a partial failure only fetches what is missing. The installed manifest
version is written only after every shard is stored.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..config import Settings, settings
from ..etl.models import Manifest, ShardDescriptor
from .client import ManifestClient, ShardArtifact, decode_payload, parse_records, select_artifact
from .errors import DatasetSyncError, ShardValidationError, SyncInProgressError
from .models import (
    LoadProgress,
    LoadStatus,
    ManifestVersion,
    ShardLifecycle,
    ShardStatus,
    SyncSummary,
    UpdateCheck,
)
from .quota import check_quota, estimate_dataset_size, format_bytes
from .storage import LocalStore

log = logging.getLogger(__name__)

ProgressCallback = Callable[[LoadProgress], None]

SIZE_TOLERANCE = 0.01


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def shard_id_for(file: str) -> str:
    return file.split(".", 1)[0]


def validate_shard(data: bytes, artifact: ShardArtifact, shard: ShardDescriptor) -> List[Dict[str, Any]]:
    """Check checksum, decoded size and record count; return the parsed records."""
    digest = hashlib.sha256(data).hexdigest()
    if digest != artifact.sha256:
        raise ShardValidationError(
            artifact.file, "checksum", f"checksum mismatch (expected {artifact.sha256}, got {digest})"
        )
    decoded = decode_payload(data, artifact.compression, artifact.file)
    tolerance = shard.uncompressed_bytes * SIZE_TOLERANCE
    if abs(len(decoded) - shard.uncompressed_bytes) > tolerance:
        raise ShardValidationError(
            artifact.file,
            "size",
            f"decoded size {len(decoded)} differs from declared {shard.uncompressed_bytes} by more than 1%",
        )
    records = parse_records(decoded, artifact.file)
    if len(records) != shard.record_count:
        raise ShardValidationError(
            artifact.file, "count", f"record count mismatch (expected {shard.record_count}, got {len(records)})"
        )
    return records


class ShardSynchronizer:
    """Owns one Local Store and one Manifest Client for the lifetime of a sync session."""

    def __init__(
        self,
        cfg: Settings = settings,
        *,
        store: Optional[LocalStore] = None,
        client: Optional[ManifestClient] = None,
        preferred_compression: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.store = store or LocalStore(cfg.store_path)
        self._owns_client = client is None
        self.client = client or ManifestClient.from_settings(cfg)
        self.preferred_compression = preferred_compression or cfg.preferred_compression
        self.on_progress = on_progress
        self.progress = LoadProgress()
        self._initialized = False
        self._load_lock = threading.Lock()

    # ---- lifecycle ----

    def init(self) -> "ShardSynchronizer":
        if not self._initialized:
            self.store.init()
            self._initialized = True
        return self

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
        self._initialized = False

    def __enter__(self) -> "ShardSynchronizer":
        return self.init()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_init(self) -> None:
        if not self._initialized:
            raise DatasetSyncError("ShardSynchronizer.init() must be called first")

    # ---- progress ----

    def _emit(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self.progress, key, value)
        if self.on_progress is not None:
            self.on_progress(self.progress.model_copy())

    def reset_progress(self) -> None:
        self.progress = LoadProgress()
        self._emit()

    # ---- manifest ----

    def installed_version(self) -> Optional[ManifestVersion]:
        self._require_init()
        return self.store.get_manifest_version()

    def check_for_updates(self) -> UpdateCheck:
        self._require_init()
        result = self.client.check_for_updates(self.store.get_manifest_version())
        log.info(
            "Dataset version local=%s remote=%s update=%s",
            result.local_version,
            result.remote_version,
            result.needs_update,
        )
        return result

    def _preflight(self, manifest: Manifest) -> None:
        needed = estimate_dataset_size(sum(s.uncompressed_bytes for s in manifest.shards))
        try:
            info = check_quota(self.store.db_path.parent, needed)
        except OSError as exc:
            log.warning("Storage quota check unavailable: %s", exc)
            return
        if not info.has_enough_space:
            log.warning(
                "Dataset needs about %s but only %s is free; continuing",
                format_bytes(needed),
                format_bytes(info.available),
            )

    # ---- loading ----

    def load_dataset(self, manifest: Optional[Manifest] = None) -> SyncSummary:
        """Sync every shard in manifest order; any failure aborts the whole call.

        Only one load runs per synchronizer. A concurrent call fails fast with
        ``SyncInProgressError`` and leaves the running load and its progress alone.
        """
        self._require_init()
        if not self._load_lock.acquire(blocking=False):
            raise SyncInProgressError("A dataset load is already running")
        try:
            return self._load_dataset(manifest)
        finally:
            self._load_lock.release()

    def _load_dataset(self, manifest: Optional[Manifest]) -> SyncSummary:
        self._emit(status=LoadStatus.checking, error_message=None)
        try:
            manifest = manifest or self.client.fetch_manifest()
            self._emit(
                total_shards=len(manifest.shards),
                total_records=manifest.total_records,
                total_bytes=manifest.total_bytes,
                current_shard=0,
                bytes_downloaded=0,
                records_loaded=0,
            )
            self._preflight(manifest)
            downloaded = 0
            for shard in manifest.shards:
                if self.load_shard(shard):
                    downloaded += 1
            self.store.prune_shards(select_artifact(s, self.preferred_compression).file for s in manifest.shards)
            self.store.save_manifest_version(
                ManifestVersion(
                    version=manifest.version,
                    generated_at=manifest.generated_at,
                    total_records=manifest.total_records,
                    total_bytes=manifest.total_bytes,
                    shards_loaded=len(manifest.shards),
                    shards_total=len(manifest.shards),
                )
            )
        except DatasetSyncError as exc:
            self._emit(status=LoadStatus.error, error_message=str(exc))
            log.error("Dataset load failed: %s", exc)
            raise
        self._emit(status=LoadStatus.complete, current_shard_name=None)
        log.info(
            "Dataset %s installed: %s shards (%s downloaded, %s already stored)",
            manifest.version,
            len(manifest.shards),
            downloaded,
            len(manifest.shards) - downloaded,
        )
        return SyncSummary(
            version=manifest.version,
            shards_total=len(manifest.shards),
            shards_downloaded=downloaded,
            shards_skipped=len(manifest.shards) - downloaded,
            records_loaded=self.progress.records_loaded,
        )

    def _status_for(self, shard: ShardDescriptor, artifact: ShardArtifact) -> ShardStatus:
        status = self.store.get_status(artifact.file)
        if status is None:
            status = ShardStatus(
                file=artifact.file,
                shard_id=shard_id_for(shard.file),
                checksum=artifact.sha256,
                record_count=shard.record_count,
                byte_size=artifact.bytes,
            )
            return self.store.save_status(status)
        if status.state in (ShardLifecycle.downloading, ShardLifecycle.validating):
            # Left in flight by an abandoned run; nothing of it was committed.
            log.info("Restarting interrupted shard %s", artifact.file)
            status.state = ShardLifecycle.pending
        status.checksum = artifact.sha256
        status.record_count = shard.record_count
        status.byte_size = artifact.bytes
        return status

    def load_shard(self, shard: ShardDescriptor) -> bool:
        """Bring one shard to ``stored``. Returns False when it was already there."""
        self._require_init()
        artifact = select_artifact(shard, self.preferred_compression)
        existing = self.store.get_status(artifact.file)
        if (
            existing is not None
            and existing.state == ShardLifecycle.stored
            and existing.checksum == artifact.sha256
        ):
            log.debug("Shard %s already stored, skipping", artifact.file)
            self._emit(
                current_shard=self.progress.current_shard + 1,
                current_shard_name=artifact.file,
                records_loaded=self.progress.records_loaded + existing.record_count,
                bytes_downloaded=self.progress.bytes_downloaded + artifact.bytes,
            )
            return False

        status = self._status_for(shard, artifact)
        self.store.save_status(status.advance(ShardLifecycle.downloading, at=_utc_now()))
        self._emit(status=LoadStatus.downloading, current_shard_name=artifact.file)
        try:
            data = self.client.download(artifact.file)
            status.downloaded_at = _utc_now()
            self._emit(bytes_downloaded=self.progress.bytes_downloaded + len(data))
            self.store.save_status(status.advance(ShardLifecycle.validating, at=_utc_now()))
            self._emit(status=LoadStatus.validating)
            records = validate_shard(data, artifact, shard)
            self.store.put_shard_payload(artifact.file, records)
        except DatasetSyncError as exc:
            status.retry_count += 1
            status.last_error = str(exc)
            self.store.save_status(status.advance(ShardLifecycle.error, at=_utc_now()))
            log.warning("Shard %s failed (attempt %s): %s", artifact.file, status.retry_count, exc)
            raise

        status.validated_at = _utc_now()
        status.last_error = None
        self.store.save_status(status.advance(ShardLifecycle.stored, at=_utc_now()))
        self._emit(
            current_shard=self.progress.current_shard + 1,
            records_loaded=self.progress.records_loaded + len(records),
        )
        log.info("Stored shard %s (%s records)", artifact.file, len(records))
        return True

    # ---- reads ----

    def get_all_records(self) -> List[Dict[str, Any]]:
        self._require_init()
        return list(self.store.iter_records())

    def iter_records(self) -> Iterator[Dict[str, Any]]:
        self._require_init()
        return self.store.iter_records()

    def get_record(self, food_id: str) -> Optional[Dict[str, Any]]:
        self._require_init()
        return self.store.get_record(food_id)

    def get_statuses(self) -> List[ShardStatus]:
        self._require_init()
        return self.store.all_statuses()
