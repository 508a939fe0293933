# -*- coding: utf-8 -*-
"""Shards — Manifest Client and raw shard download over httpx."""

from __future__ import annotations

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import zstandard
from pydantic import ValidationError

from ..config import Settings, settings
from ..etl.models import Manifest, ShardDescriptor
from .errors import ManifestFetchError, ShardDownloadError, ShardValidationError
from .models import ManifestVersion, UpdateCheck

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShardArtifact:
    """One downloadable encoding of a shard."""

    file: str
    sha256: str
    bytes: int
    compression: str


def select_artifact(shard: ShardDescriptor, preferred: Optional[str] = None) -> ShardArtifact:
    """Primary artifact, or the alternate matching ``preferred`` when one exists."""
    if preferred and preferred != shard.compression:
        for alt in shard.alternate_encodings:
            if alt.compression == preferred:
                return ShardArtifact(file=alt.file, sha256=alt.sha256, bytes=alt.bytes, compression=alt.compression)
    return ShardArtifact(
        file=shard.file,
        sha256=shard.checksum,
        bytes=shard.compressed_bytes,
        compression=shard.compression,
    )


def compare_versions(manifest: Manifest, installed: Optional[ManifestVersion]) -> UpdateCheck:
    local = installed.version if installed else None
    return UpdateCheck(
        needs_update=local is None or local != manifest.version,
        remote_version=manifest.version,
        local_version=local,
        generated_at=manifest.generated_at,
        total_records=manifest.total_records,
        total_bytes=manifest.total_bytes,
        shards_total=len(manifest.shards),
    )


def decode_payload(data: bytes, compression: str, file: str = "") -> bytes:
    try:
        if compression == "zstd":
            # Streamed frames carry no content size; decompressobj copes with that.
            return zstandard.ZstdDecompressor().decompressobj().decompress(data)
        if compression == "gzip":
            return gzip.decompress(data)
    except (zstandard.ZstdError, OSError, EOFError, zlib.error) as exc:
        raise ShardValidationError(file, "decode", f"cannot decompress {compression} payload: {exc}") from exc
    if compression == "none":
        return data
    raise ShardValidationError(file, "decode", f"unsupported compression {compression!r}")


def parse_records(text: bytes, file: str = "") -> List[Dict[str, Any]]:
    try:
        lines = text.decode("utf-8").splitlines()
    except UnicodeDecodeError as exc:
        raise ShardValidationError(file, "parse", f"payload is not UTF-8: {exc}") from exc
    records: List[Dict[str, Any]] = []
    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as exc:
            raise ShardValidationError(file, "parse", f"line {lineno} is not valid JSON: {exc}") from exc
    return records


class ManifestClient:
    def __init__(
        self,
        manifest_url: str,
        shard_base_url: str,
        *,
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ) -> None:
        self.manifest_url = manifest_url
        self.shard_base_url = shard_base_url
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_settings(cls, cfg: Settings = settings, http: Optional[httpx.Client] = None) -> "ManifestClient":
        return cls(cfg.manifest_url, cfg.shard_base_url, timeout=cfg.http_timeout, http=http)

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def shard_url(self, file: str) -> str:
        return f"{self.shard_base_url}{file}"

    def fetch_manifest(self) -> Manifest:
        try:
            resp = self.http.get(self.manifest_url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ManifestFetchError(f"Failed to fetch manifest from {self.manifest_url}: {exc}") from exc
        try:
            manifest = Manifest.model_validate_json(resp.content)
        except ValidationError as exc:
            raise ManifestFetchError(f"Manifest at {self.manifest_url} is malformed: {exc}") from exc
        log.info("Fetched manifest %s (%s shards, %s records)", manifest.version, len(manifest.shards), manifest.total_records)
        return manifest

    def check_for_updates(self, installed: Optional[ManifestVersion]) -> UpdateCheck:
        return compare_versions(self.fetch_manifest(), installed)

    def download(self, file: str) -> bytes:
        """Fetch the artifact bytes exactly as served, with no content decoding."""
        url = self.shard_url(file)
        try:
            with self.http.stream("GET", url) as resp:
                resp.raise_for_status()
                data = b"".join(resp.iter_raw())
        except httpx.HTTPError as exc:
            raise ShardDownloadError(file, f"download from {url} failed: {exc}") from exc
        log.debug("Downloaded %s (%s bytes)", file, len(data))
        return data
