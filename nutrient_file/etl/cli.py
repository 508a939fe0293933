# -*- coding: utf-8 -*-
"""
Producer CLI for the Canadian Nutrient File shards.

Usage:
    cnf-etl --sample 50 --inspect 3
    cnf-etl --full --compression zstd --max-shard-size 1M --export-provenance
    python -m nutrient_file.etl.cli --full --dry-run
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ..config import parse_size_to_bytes, settings
from .formatters import OUTPUT_FORMATS
from .pipeline import PipelineOptions, run
from .writers import COMPRESSIONS

log = logging.getLogger(__name__)


def parse_max_shard_size(raw: str) -> int:
    """All-digit values are bytes; anything else goes through the size parser."""
    text = raw.strip()
    if text.isdigit():
        return int(text)
    value = parse_size_to_bytes(text)
    if value is None:
        raise argparse.ArgumentTypeError(f"invalid size: {raw!r} (try 512K or 1M)")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build sharded CNF dataset files and manifest",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("-s", "--sample", type=int, default=0, help="Only process the first N foods")
    scope.add_argument("--full", action="store_true", help="Process every food (default)")
    parser.add_argument("-n", "--dry-run", action="store_true", help="Compute everything, write nothing")
    parser.add_argument("-S", "--shard-size", type=int, default=None, help="FoodIDs per shard range")
    parser.add_argument(
        "-M",
        "--max-shard-size",
        type=parse_max_shard_size,
        default=None,
        help="Uncompressed byte budget per shard (bytes, or 512K / 1M)",
    )
    parser.add_argument("-o", "--out-dir", default=None, help="Output directory")
    parser.add_argument("--csv-dir", default=None, help="Baseline CSV directory")
    parser.add_argument("--update-dir", default=None, help="Update CSV directory")
    parser.add_argument("--encoding", default=None, help="Force the CSV encoding")
    parser.add_argument(
        "-f", "--format", dest="output_format", choices=OUTPUT_FORMATS, default=None, help="Record shape"
    )
    parser.add_argument("-c", "--compression", choices=COMPRESSIONS, default=None, help="Primary compression")
    parser.add_argument("-p", "--export-provenance", action="store_true", help="Write provenance NDJSON")
    parser.add_argument("-i", "--inspect", type=int, default=0, help="Print N records and exit (implies --dry-run)")
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    options = PipelineOptions(
        sample_limit=0 if args.full else args.sample,
        dry_run=args.dry_run,
        inspect=args.inspect,
        export_provenance=args.export_provenance,
        shard_size=args.shard_size,
        max_shard_bytes=args.max_shard_size,
        compression=args.compression,
        output_format=args.output_format,
        out_dir=Path(args.out_dir) if args.out_dir else None,
        csv_dir=Path(args.csv_dir) if args.csv_dir else None,
        update_dir=Path(args.update_dir) if args.update_dir else None,
        csv_encoding=args.encoding,
    )
    try:
        result = run(options)
    except Exception:
        log.exception("Producer run failed")
        return 1

    for record in result.inspected:
        print(json.dumps(record, ensure_ascii=False, indent=2))
    if result.manifest_path is not None:
        print(f"Manifest: {result.manifest_path}")
    print(f"Records: {result.records} (empty: {result.empty_records})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
