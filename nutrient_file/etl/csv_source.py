# -*- coding: utf-8 -*-
"""ETL — CSV sources for baseline and update tables.

Rows come out as a lazy, single-pass iterator of ``{column: str}`` dicts. A
missing directory or file yields no rows; malformed lines are skipped with a
warning.
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import pandas as pd

log = logging.getLogger(__name__)

_CHUNK_ROWS = 5000
_SNIFF_BLOCK = 1 << 16


def _detect_encoding(path: Path, block_size: int = _SNIFF_BLOCK) -> str:
    # Legacy CNF extracts are Windows-1252; newer ones are UTF-8 (sometimes with BOM).
    # Read in blocks so a large table is never held in memory just for this check.
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        with path.open("rb") as fh:
            for block in iter(lambda: fh.read(block_size), b""):
                decoder.decode(block)
        decoder.decode(b"", final=True)
    except UnicodeDecodeError:
        return "cp1252"
    return "utf-8-sig"


def iter_csv_rows(path: Path, *, encoding: Optional[str] = None) -> Iterator[Dict[str, str]]:
    """Yield each row of ``path`` as a dict of trimmed column name -> raw string."""
    if not path.is_file() or path.stat().st_size == 0:
        return
    enc = encoding or _detect_encoding(path)

    def _skip_bad_line(bad_line: List[str]) -> None:
        log.warning("%s: skipping malformed row %r", path.name, bad_line[:6])
        return None

    reader = pd.read_csv(
        path,
        dtype=str,
        keep_default_na=False,
        encoding=enc,
        engine="python",
        on_bad_lines=_skip_bad_line,
        skip_blank_lines=True,
        chunksize=_CHUNK_ROWS,
    )
    with reader:
        for chunk in reader:
            chunk.columns = [str(c).strip() for c in chunk.columns]
            # Short rows come back as NaN; treat them like empty cells.
            chunk = chunk.fillna("")
            for row in chunk.to_dict("records"):
                yield row


@dataclass
class CsvSource:
    """Baseline and update directories for one producer run."""

    csv_dir: Optional[Path] = None
    update_dir: Optional[Path] = None
    encoding: Optional[str] = None

    def has_updates(self) -> bool:
        return bool(self.update_dir) and Path(self.update_dir).is_dir()

    def baseline_rows(self, table: str) -> Iterator[Dict[str, str]]:
        if not self.csv_dir:
            return iter(())
        return iter_csv_rows(Path(self.csv_dir) / f"{table}.csv", encoding=self.encoding)

    def update_exists(self, table: str, action: str) -> bool:
        if not self.has_updates():
            return False
        return (Path(self.update_dir) / f"{table} {action}.csv").is_file()

    def update_rows(self, table: str, action: str) -> Iterator[Dict[str, str]]:
        if not self.update_exists(table, action):
            return iter(())
        return iter_csv_rows(Path(self.update_dir) / f"{table} {action}.csv", encoding=self.encoding)

    @staticmethod
    def update_file_name(table: str, action: str) -> str:
        return f"{table} {action}.csv"
