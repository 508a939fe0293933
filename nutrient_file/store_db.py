# -*- coding: utf-8 -*-
"""Local store database — SQLite helpers.

Schema history:
- v1: application collections plus a single ``nutrients_file`` blob holding the
  whole dataset under one key.
- v2: shard-keyed payloads, per-shard status, installed manifest version and a
  FoodID index. The v1 blob is migrated away by the shard store before any
  shard data is written.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA_VERSION = 2

# Application collections owned by the rest of the app. Upgrades create them if
# missing and never drop them.
APP_COLLECTIONS = ("meals", "meal_nutrients", "favorite_nutrients", "user_session")


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version;").fetchone()[0])


def init_store_db(db_path: Path) -> int:
    """Create or upgrade the store schema. Safe to call on every open.

    Returns the schema version found before the upgrade (0 for a new file).
    """
    conn = connect(db_path)
    try:
        previous = schema_version(conn)
        cur = conn.cursor()
        for name in APP_COLLECTIONS:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {name} (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL
                );
                """
            )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shard_payloads (
                shard_index INTEGER PRIMARY KEY,
                file TEXT NOT NULL,
                records_json TEXT NOT NULL,
                record_count INTEGER NOT NULL,
                stored_at TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS food_index (
                food_id TEXT PRIMARY KEY,
                shard_index INTEGER NOT NULL,
                FOREIGN KEY(shard_index) REFERENCES shard_payloads(shard_index) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_food_index_shard ON food_index(shard_index);"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shard_status (
                file TEXT PRIMARY KEY,
                shard_id TEXT NOT NULL,
                checksum TEXT NOT NULL,
                state TEXT NOT NULL,
                record_count INTEGER NOT NULL,
                byte_size INTEGER NOT NULL,
                downloaded_at TEXT,
                validated_at TEXT,
                last_error TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS manifest_version (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                version TEXT NOT NULL,
                generated_at TEXT,
                total_records INTEGER NOT NULL,
                total_bytes INTEGER NOT NULL,
                shards_loaded INTEGER NOT NULL,
                shards_total INTEGER NOT NULL,
                installed_at TEXT NOT NULL
            );
            """
        )
        if previous < SCHEMA_VERSION:
            cur.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")
        conn.commit()
        return previous
    finally:
        conn.close()


@contextmanager
def db_conn(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()
