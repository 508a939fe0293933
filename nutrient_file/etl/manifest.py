# -*- coding: utf-8 -*-
"""ETL — manifest builder.

The manifest is the single index of the output set. It is rewritten in full
(never appended to) each time a side-channel artifact is attached.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

from .models import ArtifactRef, Manifest, ShardDescriptor
from .provenance import utc_now
from .writers import GZIP_LEVEL, ZSTD_LEVEL

log = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "canadian_nutrient_file.manifest.json"


def dataset_version(shards: Iterable[ShardDescriptor]) -> str:
    """Content-derived version: identical shard bytes give an identical version."""
    h = hashlib.sha256()
    for shard in sorted(shards, key=lambda s: s.file):
        h.update(f"{shard.file}:{shard.checksum}\n".encode("utf-8"))
    return h.hexdigest()[:16]


def build_manifest(
    shards: Iterable[ShardDescriptor],
    *,
    shard_size: int,
    compression: str,
    max_shard_bytes: Optional[int] = None,
    generated_at: Optional[str] = None,
    provenance: Optional[ArtifactRef] = None,
    empty_records: Optional[ArtifactRef] = None,
) -> Manifest:
    ordered: List[ShardDescriptor] = sorted(shards, key=lambda s: s.file)
    if compression == "none":
        algorithms = ["none"]
    else:
        algorithms = [compression] + [c for c in ("zstd", "gzip") if c != compression]
    return Manifest(
        version=dataset_version(ordered),
        generated_at=generated_at or utc_now(),
        shard_size_target=shard_size,
        max_shard_bytes=max_shard_bytes,
        compression_algorithms=algorithms,
        primary_compression=compression,
        gzip_level=GZIP_LEVEL if "gzip" in algorithms else None,
        zstd_level=ZSTD_LEVEL if "zstd" in algorithms else None,
        shards=ordered,
        total_records=sum(s.record_count for s in ordered),
        total_bytes=sum(s.compressed_bytes for s in ordered),
        provenance_ref=provenance,
        empty_records_ref=empty_records,
    )


def write_manifest(manifest: Manifest, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(manifest.to_json(), encoding="utf-8")
    os.replace(tmp, path)
    return path


def read_manifest(path: Path) -> Manifest:
    return Manifest.model_validate_json(path.read_text(encoding="utf-8"))


class ManifestBuilder:
    """Holds the current manifest and rewrites it as artifacts become available."""

    def __init__(self, path: Path, manifest: Manifest) -> None:
        self.path = Path(path)
        self.manifest = manifest

    def write(self) -> Manifest:
        write_manifest(self.manifest, self.path)
        log.info("Wrote manifest to %s", self.path)
        return self.manifest

    def attach_provenance(self, ref: ArtifactRef) -> Manifest:
        self.manifest = self.manifest.model_copy(update={"provenance_ref": ref})
        log.info("Updated manifest with provenance entry")
        return self.write()

    def attach_empty_records(self, ref: ArtifactRef) -> Manifest:
        self.manifest = self.manifest.model_copy(update={"empty_records_ref": ref})
        log.info("Updated manifest with empty-records entry")
        return self.write()
