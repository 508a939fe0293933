# -*- coding: utf-8 -*-
"""ETL — shard and NDJSON side-channel writers.

Every artifact is written to ``<name>.tmp`` first; on close the compressors
are flushed, the SHA-256 of the persisted (compressed) bytes is computed and
the file is renamed to its final name.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional

import zstandard

from .models import AlternateEncoding, ArtifactRef, ShardDescriptor

log = logging.getLogger(__name__)

GZIP_LEVEL = 6
ZSTD_LEVEL = 9
COMPRESSIONS = ("zstd", "gzip", "none")
COMPRESSION_SUFFIX = {"zstd": ".zst", "gzip": ".gz", "none": ""}


def serialize_line(record: Dict[str, Any]) -> bytes:
    return (json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


class _Sink:
    """One output artifact behind an optional compressor."""

    def __init__(
        self,
        final_path: Path,
        compression: str,
        *,
        gzip_level: int = GZIP_LEVEL,
        zstd_level: int = ZSTD_LEVEL,
    ) -> None:
        self.final_path = final_path
        self.tmp_path = final_path.with_name(final_path.name + ".tmp")
        self.compression = compression
        final_path.parent.mkdir(parents=True, exist_ok=True)
        self._raw: BinaryIO = self.tmp_path.open("wb")
        self._stream: Any
        if compression == "gzip":
            # Fixed mtime and no file name in the header: identical input, identical bytes.
            self._stream = gzip.GzipFile(filename="", mode="wb", compresslevel=gzip_level, fileobj=self._raw, mtime=0)
        elif compression == "zstd":
            self._stream = zstandard.ZstdCompressor(level=zstd_level).stream_writer(self._raw, closefd=False)
        elif compression == "none":
            self._stream = self._raw
        else:
            self._raw.close()
            raise ValueError(f"Unsupported compression: {compression}")

    def write(self, data: bytes) -> None:
        self._stream.write(data)

    def close(self) -> AlternateEncoding:
        if self._stream is not self._raw:
            self._stream.close()
        self._raw.flush()
        os.fsync(self._raw.fileno())
        self._raw.close()
        size = self.tmp_path.stat().st_size
        digest = sha256_file(self.tmp_path)
        os.replace(self.tmp_path, self.final_path)
        return AlternateEncoding(file=self.final_path.name, bytes=size, sha256=digest, compression=self.compression)

    def discard(self) -> None:
        """Drop the temp file; the published artifact, if any, is left alone."""
        if self._stream is not self._raw:
            self._stream.close()
        self._raw.close()
        self.tmp_path.unlink(missing_ok=True)


class NdjsonWriter:
    """Gzipped NDJSON writer for provenance and empty-record exports."""

    def __init__(self, out_path: Path, gzip_level: int = GZIP_LEVEL) -> None:
        self.out_path = Path(out_path)
        self.count = 0
        self._sink = _Sink(self.out_path, "gzip", gzip_level=gzip_level)

    def write(self, record: Dict[str, Any]) -> None:
        self._sink.write(serialize_line(record))
        self.count += 1

    def close(self) -> ArtifactRef:
        meta = self._sink.close()
        return ArtifactRef(file=meta.file, count=self.count, bytes=meta.bytes, sha256=meta.sha256, path=str(self.out_path))

    def discard(self) -> None:
        self._sink.discard()


@dataclass
class _OpenShard:
    index: int
    sinks: List[_Sink]
    count: int = 0
    uncompressed_bytes: int = 0
    first_key: Optional[str] = None
    last_key: Optional[str] = None
    min_key: Optional[int] = None
    max_key: Optional[int] = None

    def note_key(self, key: str) -> None:
        if self.first_key is None:
            self.first_key = key
        self.last_key = key
        try:
            num = int(key)
        except ValueError:
            return
        if self.min_key is None or num < self.min_key:
            self.min_key = num
        if self.max_key is None or num > self.max_key:
            self.max_key = num


class ShardWriter:
    """Route records into size-bounded shards, each written through every encoding."""

    def __init__(
        self,
        directory: Path,
        shard_size: int = 10000,
        *,
        max_shard_bytes: Optional[int] = None,
        compression: str = "zstd",
        gzip_level: int = GZIP_LEVEL,
        zstd_level: int = ZSTD_LEVEL,
    ) -> None:
        if compression not in COMPRESSIONS:
            raise ValueError(f"Unsupported compression: {compression}")
        self.directory = Path(directory)
        self.shard_size = shard_size
        self.max_shard_bytes = max_shard_bytes
        self.compression = compression
        self.gzip_level = gzip_level
        self.zstd_level = zstd_level
        if compression == "none":
            self.encodings = ["none"]
        else:
            # Primary first; the other compressor is published as an alternate.
            self.encodings = [compression] + [c for c in ("zstd", "gzip") if c != compression]
        self._opened: Dict[int, _OpenShard] = {}

    def shard_index_for(self, food_id: Any) -> int:
        try:
            num = int(str(food_id).strip())
        except (TypeError, ValueError):
            return 0
        return max(0, (num - 1) // self.shard_size)

    def _base_name(self, idx: int) -> str:
        return f"shard-{idx:04d}.ndjson"

    def open(self, idx: int) -> _OpenShard:
        shard = self._opened.get(idx)
        if shard is not None:
            return shard
        base = self._base_name(idx)
        sinks = [
            _Sink(
                self.directory / (base + COMPRESSION_SUFFIX[enc]),
                enc,
                gzip_level=self.gzip_level,
                zstd_level=self.zstd_level,
            )
            for enc in self.encodings
        ]
        shard = _OpenShard(index=idx, sinks=sinks)
        self._opened[idx] = shard
        log.debug("opened shard %s", base)
        return shard

    def _fits(self, shard: _OpenShard, line_bytes: int) -> bool:
        if not self.max_shard_bytes or shard.count == 0:
            return True
        return shard.uncompressed_bytes + line_bytes <= self.max_shard_bytes

    def write_record(self, idx: int, record: Dict[str, Any]) -> int:
        """Append ``record`` to shard ``idx`` or the next one with room; returns the shard used."""
        line = serialize_line(record)
        target = idx
        shard = self.open(target)
        while not self._fits(shard, len(line)):
            target += 1
            shard = self.open(target)
        for sink in shard.sinks:
            sink.write(line)
        shard.count += 1
        shard.uncompressed_bytes += len(line)
        shard.note_key(str(record.get("FoodID") or record.get("FoodCode") or ""))
        return target

    def close_all(self) -> List[ShardDescriptor]:
        results: List[ShardDescriptor] = []
        for idx in sorted(self._opened):
            shard = self._opened[idx]
            artifacts = [sink.close() for sink in shard.sinks]
            primary = artifacts[0]
            results.append(
                ShardDescriptor(
                    file=primary.file,
                    record_count=shard.count,
                    compressed_bytes=primary.bytes,
                    uncompressed_bytes=shard.uncompressed_bytes,
                    checksum=primary.sha256,
                    compression=primary.compression,
                    first_key=shard.first_key,
                    last_key=shard.last_key,
                    min_key=shard.min_key,
                    max_key=shard.max_key,
                    alternate_encodings=artifacts[1:],
                )
            )
        self._opened.clear()
        return sorted(results, key=lambda d: d.file)

    def abort(self) -> None:
        """Discard every open shard without publishing it."""
        for shard in self._opened.values():
            for sink in shard.sinks:
                sink.discard()
        self._opened.clear()
