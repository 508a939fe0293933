# -*- coding: utf-8 -*-

from __future__ import annotations

import gzip
import hashlib
import json
import shutil
import tempfile
import unittest
from pathlib import Path

from nutrient_file.etl.cli import main as cli_main
from nutrient_file.etl.cli import parse_max_shard_size
from nutrient_file.etl.manifest import MANIFEST_FILE_NAME, read_manifest
from nutrient_file.etl.merge import MergeContext
from nutrient_file.etl.pipeline import PipelineOptions, run

from .cnf_fixtures import fixed_clock, make_dirs, write_update


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = Path(tempfile.mkdtemp(prefix="cnf-pipeline-"))
        self.csv_dir, self.update_dir = make_dirs(self._tmp)
        self.out_dir = self._tmp / "out"

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)

    def options(self, **overrides) -> PipelineOptions:
        base = dict(
            csv_dir=self.csv_dir,
            update_dir=self.update_dir,
            out_dir=self.out_dir,
            shard_size=10000,
            max_shard_bytes=1024 * 1024,
            compression="zstd",
            output_format="canonical",
        )
        base.update(overrides)
        return PipelineOptions(**base)


class TestPipelineRun(PipelineTestCase):
    def test_full_run_writes_shards_side_channels_and_manifest(self) -> None:
        write_update(self.update_dir, "NUTRIENT AMOUNT", "CHANGE", [["10", "291", "12", "", "", "", ""]])
        result = run(self.options(export_provenance=True), ctx=MergeContext(clock=fixed_clock))

        self.assertEqual(result.records, 3)
        self.assertEqual(result.empty_records, 1)
        self.assertEqual(result.provenance_events, 1)
        manifest_path = self.out_dir / MANIFEST_FILE_NAME
        self.assertEqual(result.manifest_path, manifest_path)

        manifest = read_manifest(manifest_path)
        self.assertEqual(manifest.total_records, 3)
        self.assertEqual([s.file for s in manifest.shards], ["shard-0000.ndjson.zst"])
        self.assertEqual(manifest.shards[0].first_key, "10")
        self.assertEqual(manifest.shards[0].last_key, "30")
        self.assertEqual(manifest.provenance_ref.count, 1)
        self.assertEqual(manifest.empty_records_ref.count, 1)

        empty = gzip.decompress((self.out_dir / "empty" / "empty.ndjson.gz").read_bytes()).splitlines()
        self.assertEqual(json.loads(empty[0])["FoodID"], "40")
        prov = gzip.decompress((self.out_dir / "provenance" / "provenance.ndjson.gz").read_bytes()).splitlines()
        event = json.loads(prov[0])
        self.assertEqual(event["FoodID"], "10")
        self.assertEqual(event["sourceFile"], "NUTRIENT AMOUNT CHANGE.csv")

    def test_rerun_produces_same_version(self) -> None:
        first = run(self.options()).manifest
        second = run(self.options()).manifest
        self.assertEqual(first.version, second.version)
        self.assertEqual(first.shards, second.shards)

    def test_rerun_removes_stale_shards(self) -> None:
        run(self.options(shard_size=10))
        self.assertTrue((self.out_dir / "shards" / "shard-0002.ndjson.zst").exists())
        run(self.options(shard_size=10000))
        files = sorted(p.name for p in (self.out_dir / "shards").iterdir())
        self.assertEqual(files, ["shard-0000.ndjson.gz", "shard-0000.ndjson.zst"])

    def _published_state(self) -> dict:
        shard_dir = self.out_dir / "shards"
        return {
            "manifest": (self.out_dir / MANIFEST_FILE_NAME).read_bytes(),
            "shards": {p.name: p.read_bytes() for p in sorted(shard_dir.iterdir())},
        }

    def _assert_manifest_matches_disk(self) -> None:
        manifest = read_manifest(self.out_dir / MANIFEST_FILE_NAME)
        for shard in manifest.shards:
            data = (self.out_dir / "shards" / shard.file).read_bytes()
            self.assertEqual(hashlib.sha256(data).hexdigest(), shard.checksum)

    def test_bad_options_rejected_before_touching_output(self) -> None:
        run(self.options(shard_size=10))
        before = self._published_state()

        with self.assertRaises(ValueError):
            run(self.options(shard_size=10, output_format="nope"))
        with self.assertRaises(ValueError):
            run(self.options(shard_size=10, compression="brotli"))
        with self.assertRaises(ValueError):
            run(self.options(shard_size=-1))

        self.assertEqual(self._published_state(), before)
        self._assert_manifest_matches_disk()

    def test_failed_rerun_keeps_previous_output(self) -> None:
        run(self.options(shard_size=10))
        before = self._published_state()

        # FoodID 40 has no nutrients; its side channel cannot be created once
        # the "empty" directory is replaced by a plain file.
        shutil.rmtree(self.out_dir / "empty")
        (self.out_dir / "empty").write_text("in the way", encoding="utf-8")
        with self.assertRaises(OSError):
            run(self.options(shard_size=10000))

        self.assertEqual(self._published_state(), before)
        self.assertEqual(list((self.out_dir / "shards").glob("*.tmp")), [])
        self._assert_manifest_matches_disk()

    def test_dry_run_writes_nothing(self) -> None:
        result = run(self.options(dry_run=True))
        self.assertEqual(result.records, 3)
        self.assertIsNone(result.manifest)
        self.assertFalse(self.out_dir.exists())

    def test_inspect_returns_records_and_forces_dry_run(self) -> None:
        result = run(self.options(inspect=2, output_format="legacy"))
        self.assertEqual([r["FoodID"] for r in result.inspected], ["10", "20"])
        self.assertAlmostEqual(result.inspected[0]["FctGluc"], 0.4)
        self.assertFalse(self.out_dir.exists())

    def test_sample_run(self) -> None:
        result = run(self.options(sample_limit=1))
        self.assertEqual(result.records, 1)
        self.assertEqual(result.manifest.total_records, 1)


class TestCli(PipelineTestCase):
    def test_max_shard_size_parsing(self) -> None:
        self.assertEqual(parse_max_shard_size("4096"), 4096)
        self.assertEqual(parse_max_shard_size("512K"), 512 * 1024)
        self.assertEqual(parse_max_shard_size("1m"), 1024 * 1024)

    def test_cli_full_run(self) -> None:
        code = cli_main(
            [
                "--full",
                "--csv-dir",
                str(self.csv_dir),
                "--update-dir",
                str(self.update_dir),
                "-o",
                str(self.out_dir),
                "-M",
                "1M",
                "-c",
                "gzip",
                "--log-level",
                "warning",
            ]
        )
        self.assertEqual(code, 0)
        manifest = read_manifest(self.out_dir / MANIFEST_FILE_NAME)
        self.assertEqual(manifest.primary_compression, "gzip")
        self.assertEqual(manifest.max_shard_bytes, 1024 * 1024)

    def test_cli_failure_exits_nonzero(self) -> None:
        blocker = self._tmp / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        code = cli_main(
            [
                "--csv-dir",
                str(self.csv_dir),
                "--update-dir",
                str(self.update_dir),
                "-o",
                str(blocker),
                "--log-level",
                "error",
            ]
        )
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
