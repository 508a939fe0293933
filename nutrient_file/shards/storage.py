# -*- coding: utf-8 -*-
"""Shards — Local Store over SQLite.

Every public method runs in its own short transaction. SQLite and OS failures
are re-raised as ``StorageError`` subclasses.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..store_db import SCHEMA_VERSION, db_conn, init_store_db
from .errors import classify_storage_error
from .models import ManifestVersion, ShardLifecycle, ShardStatus

log = logging.getLogger(__name__)

LEGACY_BLOB_TABLE = "nutrients_file"

_SHARD_INDEX_RE = re.compile(r"shard-(\d+)")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def shard_index_from_file(file: str) -> int:
    m = _SHARD_INDEX_RE.search(file)
    if not m:
        raise ValueError(f"Not a shard file name: {file}")
    return int(m.group(1))


class LocalStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._ready = False

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with db_conn(self.db_path) as conn:
                yield conn
        except (sqlite3.Error, OSError) as exc:
            raise classify_storage_error(exc, action) from exc

    def init(self) -> int:
        """Create or upgrade the schema, then drop any legacy dataset blob."""
        try:
            previous = init_store_db(self.db_path)
        except (sqlite3.Error, OSError) as exc:
            raise classify_storage_error(exc, "open store") from exc
        if previous and previous < SCHEMA_VERSION:
            log.info("Upgraded local store %s from schema v%s", self.db_path, previous)
        self.migrate_legacy_blob()
        self._ready = True
        return previous

    @property
    def ready(self) -> bool:
        return self._ready

    def migrate_legacy_blob(self) -> bool:
        with self._transaction("legacy migration") as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                (LEGACY_BLOB_TABLE,),
            ).fetchone()
            if row is None:
                return False
            conn.execute(f"DROP TABLE {LEGACY_BLOB_TABLE}")
        log.info("Removed legacy single-blob dataset table %s", LEGACY_BLOB_TABLE)
        return True

    # ---- shard payloads ----

    def put_shard_payload(self, file: str, records: List[Dict[str, Any]]) -> int:
        """Replace the payload for ``file``'s shard index and rebuild its FoodID index rows."""
        idx = shard_index_from_file(file)
        with self._transaction(f"store {file}") as conn:
            conn.execute("DELETE FROM food_index WHERE shard_index = ?", (idx,))
            conn.execute("DELETE FROM shard_payloads WHERE shard_index = ?", (idx,))
            conn.execute(
                """
                INSERT INTO shard_payloads (shard_index, file, records_json, record_count, stored_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (idx, file, json.dumps(records, ensure_ascii=False), len(records), _utc_now()),
            )
            conn.executemany(
                "INSERT OR REPLACE INTO food_index (food_id, shard_index) VALUES (?, ?)",
                [(str(r["FoodID"]), idx) for r in records if r.get("FoodID") is not None],
            )
        return idx

    def get_shard_records(self, shard_index: int) -> Optional[List[Dict[str, Any]]]:
        with self._transaction("read shard") as conn:
            row = conn.execute(
                "SELECT records_json FROM shard_payloads WHERE shard_index = ?", (shard_index,)
            ).fetchone()
        return json.loads(row["records_json"]) if row else None

    def get_record(self, food_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction("read record") as conn:
            row = conn.execute(
                """
                SELECT p.records_json FROM food_index f
                JOIN shard_payloads p ON p.shard_index = f.shard_index
                JOIN shard_status s ON s.file = p.file
                WHERE f.food_id = ? AND s.state = ?
                """,
                (str(food_id).strip(), ShardLifecycle.stored.value),
            ).fetchone()
        if row is None:
            return None
        for record in json.loads(row["records_json"]):
            if str(record.get("FoodID")) == str(food_id).strip():
                return record
        return None

    def iter_records(self) -> Iterator[Dict[str, Any]]:
        """Records of every ``stored`` shard, in shard order."""
        with self._transaction("read records") as conn:
            rows = conn.execute(
                """
                SELECT p.records_json FROM shard_payloads p
                JOIN shard_status s ON s.file = p.file
                WHERE s.state = ?
                ORDER BY p.shard_index
                """,
                (ShardLifecycle.stored.value,),
            ).fetchall()
        for row in rows:
            yield from json.loads(row["records_json"])

    def count_records(self) -> int:
        with self._transaction("count records") as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(p.record_count), 0) AS n FROM shard_payloads p
                JOIN shard_status s ON s.file = p.file
                WHERE s.state = ?
                """,
                (ShardLifecycle.stored.value,),
            ).fetchone()
        return int(row["n"])

    def prune_shards(self, keep_files: Iterable[str]) -> int:
        """Drop payloads and statuses for shards the current manifest no longer lists."""
        keep = set(keep_files)
        with self._transaction("prune shards") as conn:
            stale = [r["file"] for r in conn.execute("SELECT file FROM shard_status").fetchall() if r["file"] not in keep]
            stale_payloads = [
                r["shard_index"]
                for r in conn.execute("SELECT shard_index, file FROM shard_payloads").fetchall()
                if r["file"] not in keep
            ]
            for file in stale:
                conn.execute("DELETE FROM shard_status WHERE file = ?", (file,))
            for idx in stale_payloads:
                conn.execute("DELETE FROM food_index WHERE shard_index = ?", (idx,))
                conn.execute("DELETE FROM shard_payloads WHERE shard_index = ?", (idx,))
        if stale or stale_payloads:
            log.info("Pruned %s stale shard entries", max(len(stale), len(stale_payloads)))
        return len(stale_payloads)

    # ---- shard status ----

    def get_status(self, file: str) -> Optional[ShardStatus]:
        with self._transaction("read status") as conn:
            row = conn.execute("SELECT * FROM shard_status WHERE file = ?", (file,)).fetchone()
        return ShardStatus.model_validate(dict(row)) if row else None

    def save_status(self, status: ShardStatus) -> ShardStatus:
        status.updated_at = status.updated_at or _utc_now()
        with self._transaction(f"save status {status.file}") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO shard_status (
                    file, shard_id, checksum, state, record_count, byte_size,
                    downloaded_at, validated_at, last_error, retry_count, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    status.file,
                    status.shard_id,
                    status.checksum,
                    status.state.value,
                    status.record_count,
                    status.byte_size,
                    status.downloaded_at,
                    status.validated_at,
                    status.last_error,
                    status.retry_count,
                    status.updated_at,
                ),
            )
        return status

    def all_statuses(self) -> List[ShardStatus]:
        with self._transaction("list statuses") as conn:
            rows = conn.execute("SELECT * FROM shard_status ORDER BY file").fetchall()
        return [ShardStatus.model_validate(dict(r)) for r in rows]

    # ---- installed manifest ----

    def get_manifest_version(self) -> Optional[ManifestVersion]:
        with self._transaction("read manifest version") as conn:
            row = conn.execute("SELECT * FROM manifest_version WHERE id = 1").fetchone()
        if row is None:
            return None
        data = dict(row)
        data.pop("id", None)
        return ManifestVersion.model_validate(data)

    def save_manifest_version(self, version: ManifestVersion) -> ManifestVersion:
        version.installed_at = version.installed_at or _utc_now()
        with self._transaction("save manifest version") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO manifest_version (
                    id, version, generated_at, total_records, total_bytes,
                    shards_loaded, shards_total, installed_at
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.version,
                    version.generated_at,
                    version.total_records,
                    version.total_bytes,
                    version.shards_loaded,
                    version.shards_total,
                    version.installed_at,
                ),
            )
        return version
