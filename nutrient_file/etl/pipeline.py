# -*- coding: utf-8 -*-
"""ETL — end-to-end producer run.

Load baselines -> apply updates -> build the aggregate -> derive fields ->
write shards, side channels and the manifest. The manifest is written only
after every shard has been closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..config import settings
from .compute import compute_derived
from .csv_source import CsvSource
from .formatters import OUTPUT_FORMATS, format_record
from .loaders import (
    iter_nutrient_amounts,
    load_conversion_factors,
    load_food_names,
    load_nutrient_names,
)
from .manifest import MANIFEST_FILE_NAME, ManifestBuilder, build_manifest
from .merge import (
    Aggregate,
    MergeContext,
    apply_conversion_factor_updates,
    apply_food_name_updates,
    apply_nutrient_amount_updates,
    apply_nutrient_name_updates,
    attach_event,
    build_aggregate,
    populate_nutrient_amounts,
)
from .models import FoodState, Manifest, ShardDescriptor
from .writers import COMPRESSIONS, NdjsonWriter, ShardWriter

log = logging.getLogger(__name__)

SHARDS_DIR = "shards"
PROVENANCE_FILE = Path("provenance") / "provenance.ndjson.gz"
EMPTY_FILE = Path("empty") / "empty.ndjson.gz"


@dataclass
class PipelineOptions:
    """Knobs for one run. ``None`` falls back to ``settings``."""

    sample_limit: int = 0
    dry_run: bool = False
    inspect: int = 0
    export_provenance: bool = False
    shard_size: Optional[int] = None
    max_shard_bytes: Optional[int] = None
    compression: Optional[str] = None
    output_format: Optional[str] = None
    out_dir: Optional[Path] = None
    csv_dir: Optional[Path] = None
    update_dir: Optional[Path] = None
    csv_encoding: Optional[str] = None

    def resolved(self) -> "PipelineOptions":
        """Fill defaults from ``settings`` and reject bad values before anything is touched on disk."""
        opts = PipelineOptions(
            sample_limit=max(0, int(self.sample_limit or 0)),
            dry_run=self.dry_run or self.inspect > 0,
            inspect=self.inspect,
            export_provenance=self.export_provenance,
            shard_size=self.shard_size or settings.shard_size,
            max_shard_bytes=settings.max_shard_bytes if self.max_shard_bytes is None else self.max_shard_bytes,
            compression=(self.compression or settings.compression).lower(),
            output_format=(self.output_format or settings.output_format).lower(),
            out_dir=Path(self.out_dir or settings.out_dir),
            csv_dir=Path(self.csv_dir or settings.csv_dir),
            update_dir=Path(self.update_dir or settings.update_dir),
            csv_encoding=self.csv_encoding or settings.csv_encoding,
        )
        if opts.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unknown output format: {opts.output_format}")
        if opts.compression not in COMPRESSIONS:
            raise ValueError(f"Unsupported compression: {opts.compression}")
        if opts.shard_size <= 0:
            raise ValueError(f"Shard size must be positive, got {opts.shard_size}")
        if opts.max_shard_bytes < 0:
            raise ValueError(f"Max shard bytes must not be negative, got {opts.max_shard_bytes}")
        return opts


@dataclass
class PipelineResult:
    records: int = 0
    empty_records: int = 0
    provenance_events: int = 0
    manifest: Optional[Manifest] = None
    manifest_path: Optional[Path] = None
    inspected: List[Dict[str, Any]] = field(default_factory=list)


def _food_sort_key(food_id: str) -> Tuple[int, int, str]:
    try:
        return (0, int(food_id), food_id)
    except ValueError:
        return (1, 0, food_id)


def sorted_records(aggregate: Aggregate) -> List[FoodState]:
    return [aggregate[k] for k in sorted(aggregate, key=_food_sort_key)]


def build_dataset(source: CsvSource, ctx: MergeContext, sample_limit: int = 0) -> Aggregate:
    """Produce the merged aggregate with derived fields attached."""
    nutrient_meta = load_nutrient_names(source)
    apply_nutrient_name_updates(nutrient_meta, source, ctx)

    food_names = load_food_names(source, sample_limit=sample_limit)
    food_ids = None
    if sample_limit:
        food_ids = set(food_names)
        ctx.identity_filter = set(food_ids)
    food_events = apply_food_name_updates(food_names, source, ctx)

    conversions = load_conversion_factors(source, food_ids=food_ids)
    conversion_events = apply_conversion_factor_updates(conversions, source, ctx)

    aggregate = build_aggregate(food_names, conversions)
    for evt in food_events + conversion_events:
        attach_event(aggregate, evt, ctx, conversions)

    loaded = populate_nutrient_amounts(aggregate, iter_nutrient_amounts(source, nutrient_meta, food_ids=food_ids))
    log.info("Attached %s nutrient amounts to %s foods", loaded, len(aggregate))
    apply_nutrient_amount_updates(aggregate, nutrient_meta, source, ctx, conversions)

    for state in aggregate.values():
        state.derived = compute_derived(state)
    return aggregate


def _published_files(descriptors: Iterable[ShardDescriptor]) -> Set[str]:
    files: Set[str] = set()
    for d in descriptors:
        files.add(d.file)
        files.update(alt.file for alt in d.alternate_encodings)
    return files


def _remove_stale_shards(shard_dir: Path, keep: Set[str]) -> int:
    """Delete shard files (and leftover temp files) the new manifest does not list."""
    removed = 0
    for path in shard_dir.glob("shard-*.ndjson*"):
        if path.name not in keep:
            path.unlink()
            removed += 1
    if removed:
        log.info("Removed %s stale shard files from %s", removed, shard_dir)
    return removed


def write_dataset(
    records: Iterable[FoodState],
    opts: PipelineOptions,
    result: PipelineResult,
) -> Manifest:
    """Write shards and side channels, then the manifest.

    Nothing already published is replaced until every record has been written;
    on failure the temp files are dropped and the previous output stays intact.
    """
    out_dir = Path(opts.out_dir)
    shard_dir = out_dir / SHARDS_DIR
    writer = ShardWriter(
        shard_dir,
        opts.shard_size,
        max_shard_bytes=opts.max_shard_bytes,
        compression=opts.compression,
    )
    provenance_writer: Optional[NdjsonWriter] = None
    empty_writer: Optional[NdjsonWriter] = None

    try:
        if opts.export_provenance:
            provenance_writer = NdjsonWriter(out_dir / PROVENANCE_FILE)
        for state in records:
            record = format_record(state, opts.output_format)
            if state.nutrients_by_id:
                writer.write_record(writer.shard_index_for(state.food_id), record)
                result.records += 1
            else:
                if empty_writer is None:
                    empty_writer = NdjsonWriter(out_dir / EMPTY_FILE)
                empty_writer.write(record)
                result.empty_records += 1
            if provenance_writer is not None:
                for evt in state.provenance:
                    provenance_writer.write({"FoodID": state.food_id, **evt.model_dump(by_alias=True)})
                    result.provenance_events += 1
    except BaseException:
        writer.abort()
        for side in (provenance_writer, empty_writer):
            if side is not None:
                side.discard()
        raise

    descriptors = writer.close_all()
    _remove_stale_shards(shard_dir, _published_files(descriptors))
    manifest = build_manifest(
        descriptors,
        shard_size=opts.shard_size,
        compression=opts.compression,
        max_shard_bytes=opts.max_shard_bytes or None,
    )
    builder = ManifestBuilder(out_dir / MANIFEST_FILE_NAME, manifest)
    builder.write()
    if provenance_writer is not None:
        builder.attach_provenance(provenance_writer.close())
    if empty_writer is not None:
        builder.attach_empty_records(empty_writer.close())
    result.manifest_path = builder.path
    log.info(
        "Wrote %s shards (%s records, %s bytes) to %s",
        len(descriptors),
        builder.manifest.total_records,
        builder.manifest.total_bytes,
        shard_dir,
    )
    return builder.manifest


def run(options: Optional[PipelineOptions] = None, *, ctx: Optional[MergeContext] = None) -> PipelineResult:
    opts = (options or PipelineOptions()).resolved()
    ctx = ctx or MergeContext()
    source = CsvSource(csv_dir=opts.csv_dir, update_dir=opts.update_dir, encoding=opts.csv_encoding)
    log.info(
        "Producer run: csv_dir=%s update_dir=%s sample=%s format=%s compression=%s",
        opts.csv_dir,
        opts.update_dir,
        opts.sample_limit or "full",
        opts.output_format,
        opts.compression,
    )

    aggregate = build_dataset(source, ctx, sample_limit=opts.sample_limit)
    ctx.log_summary()
    records = sorted_records(aggregate)
    result = PipelineResult()

    if opts.inspect:
        result.inspected = [format_record(s, opts.output_format) for s in records[: opts.inspect]]
    if opts.dry_run:
        result.records = sum(1 for s in records if s.nutrients_by_id)
        result.empty_records = len(records) - result.records
        log.info("Dry run: %s records, %s empty; nothing written", result.records, result.empty_records)
        return result

    result.manifest = write_dataset(records, opts, result)
    return result
