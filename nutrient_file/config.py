from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union


def parse_size_to_bytes(value: Union[str, int, float, None]) -> Optional[int]:
    """Parse '512K', '1M', '2' (KiB) or a plain number of bytes."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    m = re.fullmatch(r"([0-9]+(?:\.[0-9]+)?)(k|kb|m|mb)?", str(value).strip().lower())
    if not m:
        return None
    num = float(m.group(1))
    unit = m.group(2)
    if unit in {"m", "mb"}:
        return int(round(num * 1024 * 1024))
    # Bare numbers are KiB, same as an explicit "k".
    return int(round(num * 1024))


class Settings:
    """Centralized configuration for the CNF shard producer and client."""

    def __init__(self) -> None:
        base_dir = Path(__file__).resolve().parent
        repo_root = base_dir.parent
        raw_root = repo_root / "nutrient_file_raw"

        self.csv_dir: Path = Path(
            os.environ.get("CNF_CSV_DIR") or (raw_root / "cnf-fcen-csv")
        ).expanduser()
        self.update_dir: Path = Path(
            os.environ.get("CNF_UPDATE_DIR") or (raw_root / "cnf-fcen-csv-update-miseajour")
        ).expanduser()
        self.csv_encoding: str | None = os.environ.get("CNF_CSV_ENCODING") or None
        self.out_dir: Path = Path(
            os.environ.get("CNF_OUT_DIR") or (repo_root / "tmp")
        ).expanduser()
        self.shard_size: int = int(os.environ.get("CNF_SHARD_SIZE") or "10000")
        self.max_shard_bytes: int = (
            parse_size_to_bytes(os.environ.get("CNF_MAX_SHARD_BYTES")) or 1024 * 1024
        )
        self.compression: str = (os.environ.get("CNF_COMPRESSION") or "zstd").strip().lower()
        self.output_format: str = (os.environ.get("CNF_OUTPUT_FORMAT") or "canonical").strip().lower()
        self.log_level: str = (os.environ.get("CNF_LOG_LEVEL") or "info").strip().lower()

        # ---- client side ----
        self.manifest_url: str = os.environ.get(
            "CNF_MANIFEST_URL", "http://127.0.0.1:8000/data/canadian_nutrient_file.manifest.json"
        )
        self.shard_base_url: str = os.environ.get(
            "CNF_SHARD_BASE_URL", "http://127.0.0.1:8000/data/shards/"
        )
        self.store_path: Path = Path(
            os.environ.get("CNF_STORE_PATH") or (repo_root / "data" / "nutrient_file.db")
        ).expanduser()
        self.http_timeout: float = float(os.environ.get("CNF_HTTP_TIMEOUT") or "30")
        self.preferred_compression: str | None = (
            os.environ.get("CNF_PREFERRED_COMPRESSION") or None
        )


settings = Settings()
