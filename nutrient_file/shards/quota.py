# -*- coding: utf-8 -*-
"""Shards — advisory disk-space pre-flight for the local store."""

from __future__ import annotations

import logging
import math
import shutil
from pathlib import Path

from .models import QuotaInfo

log = logging.getLogger(__name__)

# Payload JSON, the FoodID index and SQLite page overhead on top of the raw bytes.
STORE_OVERHEAD = 1.2


def _existing_dir(path: Path) -> Path:
    p = Path(path)
    while not p.exists() and p != p.parent:
        p = p.parent
    return p if p.is_dir() else p.parent


def check_quota(path: Path, estimated_space_needed: int = 0) -> QuotaInfo:
    usage = shutil.disk_usage(_existing_dir(path))
    percent = (usage.used / usage.total) * 100 if usage.total > 0 else 0.0
    return QuotaInfo(
        usage=usage.used,
        quota=usage.total,
        available=usage.free,
        percent_used=percent,
        has_enough_space=usage.free >= estimated_space_needed,
        estimated_space_needed=estimated_space_needed,
    )


def estimate_dataset_size(total_bytes: int) -> int:
    return int(math.ceil(total_bytes * STORE_OVERHEAD))


def quota_warning_level(info: QuotaInfo) -> str:
    if info.percent_used >= 90:
        return "critical"
    if info.percent_used >= 75:
        return "warning"
    return "safe"


def format_bytes(num: int, decimals: int = 2) -> str:
    if num <= 0:
        return "0 Bytes"
    sizes = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    while i < len(sizes) - 1 and num >= 1024 ** (i + 1):
        i += 1
    value = round(num / (1024 ** i), max(0, decimals))
    return f"{value:g} {sizes[i]}"
