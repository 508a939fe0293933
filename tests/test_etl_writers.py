# -*- coding: utf-8 -*-

from __future__ import annotations

import gzip
import hashlib
import json
import shutil
import tempfile
import unittest
from pathlib import Path

import zstandard

from nutrient_file.etl.csv_source import _detect_encoding, iter_csv_rows
from nutrient_file.etl.manifest import ManifestBuilder, build_manifest, dataset_version, read_manifest
from nutrient_file.etl.models import ArtifactRef
from nutrient_file.etl.writers import NdjsonWriter, ShardWriter, serialize_line


def _record(food_id: int, pad: int = 40) -> dict:
    return {"FoodID": str(food_id), "Description": "x" * pad, "Nutrients": [{"NutrientID": "203", "value": 1.5}]}


def _zstd_lines(path: Path) -> list:
    data = zstandard.ZstdDecompressor().decompressobj().decompress(path.read_bytes())
    return data.decode("utf-8").splitlines()


class WriterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = Path(tempfile.mkdtemp(prefix="cnf-writers-"))

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)


class TestShardWriter(WriterTestCase):
    def test_round_trip_counts_bytes_and_checksums(self) -> None:
        writer = ShardWriter(self._tmp / "shards", shard_size=10)
        records = [_record(i) for i in range(1, 26)]
        for rec in records:
            writer.write_record(writer.shard_index_for(rec["FoodID"]), rec)
        shards = writer.close_all()

        self.assertEqual([s.file for s in shards], ["shard-0000.ndjson.zst", "shard-0001.ndjson.zst", "shard-0002.ndjson.zst"])
        self.assertEqual([s.record_count for s in shards], [10, 10, 5])
        self.assertEqual((shards[0].min_key, shards[0].max_key), (1, 10))
        self.assertEqual((shards[2].first_key, shards[2].last_key), ("21", "25"))

        for shard in shards:
            primary = self._tmp / "shards" / shard.file
            self.assertEqual(hashlib.sha256(primary.read_bytes()).hexdigest(), shard.checksum)
            self.assertEqual(primary.stat().st_size, shard.compressed_bytes)
            lines = _zstd_lines(primary)
            self.assertEqual(len(lines), shard.record_count)
            self.assertEqual(sum(len(line.encode("utf-8")) + 1 for line in lines), shard.uncompressed_bytes)
            for line in lines:
                json.loads(line)

            self.assertEqual(len(shard.alternate_encodings), 1)
            alt = shard.alternate_encodings[0]
            self.assertEqual(alt.compression, "gzip")
            alt_path = self._tmp / "shards" / alt.file
            self.assertEqual(hashlib.sha256(alt_path.read_bytes()).hexdigest(), alt.sha256)
            self.assertEqual(len(gzip.decompress(alt_path.read_bytes()).splitlines()), shard.record_count)

        self.assertEqual(list((self._tmp / "shards").glob("*.tmp")), [])

    def test_byte_budget_advances_to_next_shard(self) -> None:
        line_len = len(serialize_line(_record(1)))
        budget = line_len * 3 + 5
        writer = ShardWriter(self._tmp / "shards", shard_size=10000, max_shard_bytes=budget)
        for i in range(1, 11):
            writer.write_record(0, _record(i))
        shards = writer.close_all()

        self.assertEqual(sum(s.record_count for s in shards), 10)
        self.assertEqual([s.record_count for s in shards], [3, 3, 3, 1])
        for shard in shards:
            self.assertLessEqual(shard.uncompressed_bytes, budget)

    def test_oversized_record_gets_its_own_shard(self) -> None:
        writer = ShardWriter(self._tmp / "shards", shard_size=10000, max_shard_bytes=200)
        writer.write_record(0, _record(1, pad=10))
        target = writer.write_record(0, _record(2, pad=1000))
        writer.write_record(0, _record(3, pad=10))
        shards = writer.close_all()

        self.assertEqual(target, 1)
        self.assertEqual([s.record_count for s in shards], [2, 1])
        self.assertGreater(shards[1].uncompressed_bytes, 200)

    def test_gzip_primary_and_deterministic_bytes(self) -> None:
        digests = []
        for run in ("a", "b"):
            writer = ShardWriter(self._tmp / run, shard_size=100, compression="gzip")
            for i in range(1, 6):
                writer.write_record(0, _record(i))
            (shard,) = writer.close_all()
            self.assertEqual(shard.file, "shard-0000.ndjson.gz")
            self.assertEqual(shard.alternate_encodings[0].compression, "zstd")
            digests.append(shard.checksum)
        self.assertEqual(digests[0], digests[1])

    def test_uncompressed_mode_has_no_alternates(self) -> None:
        writer = ShardWriter(self._tmp / "shards", compression="none")
        writer.write_record(0, _record(1))
        (shard,) = writer.close_all()
        self.assertEqual(shard.file, "shard-0000.ndjson")
        self.assertEqual(shard.alternate_encodings, [])
        self.assertEqual(shard.compressed_bytes, shard.uncompressed_bytes)

    def test_abort_leaves_published_shards_untouched(self) -> None:
        shard_dir = self._tmp / "shards"
        first = ShardWriter(shard_dir, shard_size=100)
        first.write_record(0, _record(1))
        (published,) = first.close_all()
        before = (shard_dir / published.file).read_bytes()

        second = ShardWriter(shard_dir, shard_size=100)
        second.write_record(0, _record(2))
        second.write_record(1, _record(150))
        second.abort()

        self.assertEqual(sorted(p.name for p in shard_dir.iterdir()), ["shard-0000.ndjson.gz", "shard-0000.ndjson.zst"])
        self.assertEqual((shard_dir / published.file).read_bytes(), before)

    def test_rejects_unknown_compression(self) -> None:
        with self.assertRaises(ValueError):
            ShardWriter(self._tmp, compression="brotli")

    def test_non_numeric_id_routes_to_first_shard(self) -> None:
        writer = ShardWriter(self._tmp, shard_size=10)
        self.assertEqual(writer.shard_index_for("abc"), 0)
        self.assertEqual(writer.shard_index_for(" 25 "), 2)


class TestNdjsonWriter(WriterTestCase):
    def test_gzip_side_channel(self) -> None:
        out = self._tmp / "provenance" / "provenance.ndjson.gz"
        writer = NdjsonWriter(out)
        writer.write({"FoodID": "10", "action": "ADD"})
        writer.write({"FoodID": "20", "action": "DELETE"})
        ref = writer.close()

        self.assertEqual(ref.count, 2)
        self.assertEqual(ref.file, "provenance.ndjson.gz")
        self.assertEqual(ref.sha256, hashlib.sha256(out.read_bytes()).hexdigest())
        rows = [json.loads(line) for line in gzip.decompress(out.read_bytes()).splitlines()]
        self.assertEqual(rows[1]["action"], "DELETE")


class TestManifest(WriterTestCase):
    def _shards(self, directory: Path) -> list:
        writer = ShardWriter(directory, shard_size=2)
        for i in (3, 1, 2, 4):
            writer.write_record(writer.shard_index_for(i), _record(i))
        return writer.close_all()

    def test_build_and_rewrite(self) -> None:
        shards = self._shards(self._tmp / "shards")
        manifest = build_manifest(list(reversed(shards)), shard_size=2, compression="zstd", max_shard_bytes=1024)

        self.assertEqual([s.file for s in manifest.shards], sorted(s.file for s in shards))
        self.assertEqual(manifest.total_records, 4)
        self.assertEqual(manifest.total_bytes, sum(s.compressed_bytes for s in shards))
        self.assertEqual(manifest.compression_algorithms, ["zstd", "gzip"])
        self.assertEqual(manifest.primary_compression, "zstd")
        self.assertEqual(manifest.version, dataset_version(shards))

        path = self._tmp / "canadian_nutrient_file.manifest.json"
        builder = ManifestBuilder(path, manifest)
        builder.write()
        doc = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(doc["schemaVersion"], "1.0")
        self.assertEqual(doc["shardingKey"], "FoodID_range")
        self.assertEqual(doc["shards"][0]["count"], 2)
        self.assertIn("sha256", doc["shards"][0])
        self.assertIn("alternates", doc["shards"][0])
        self.assertNotIn("provenance", doc)

        builder.attach_provenance(ArtifactRef(file="provenance.ndjson.gz", count=5, bytes=100, sha256="ab" * 32))
        builder.attach_empty_records(ArtifactRef(file="empty.ndjson.gz", count=1, bytes=50, sha256="cd" * 32))
        reread = read_manifest(path)
        self.assertEqual(reread.provenance_ref.count, 5)
        self.assertEqual(reread.empty_records_ref.count, 1)
        self.assertEqual(reread.shards, manifest.shards)

    def test_version_tracks_content(self) -> None:
        first = self._shards(self._tmp / "a")
        second = self._shards(self._tmp / "b")
        self.assertEqual(dataset_version(first), dataset_version(second))
        changed = [first[0].model_copy(update={"checksum": "0" * 64})] + first[1:]
        self.assertNotEqual(dataset_version(first), dataset_version(changed))


class TestCsvSource(WriterTestCase):
    def test_missing_file_yields_nothing(self) -> None:
        self.assertEqual(list(iter_csv_rows(self._tmp / "NOPE.csv")), [])

    def test_windows_1252_fallback(self) -> None:
        path = self._tmp / "FOOD NAME.csv"
        path.write_bytes("FoodID,FoodDescription\n1,Café au lait\n".encode("cp1252"))
        rows = list(iter_csv_rows(path))
        self.assertEqual(rows, [{"FoodID": "1", "FoodDescription": "Café au lait"}])

    def test_bom_and_padded_headers(self) -> None:
        path = self._tmp / "FOOD NAME.csv"
        path.write_bytes("\ufeffFoodID , FoodCode\n7,70\n".encode("utf-8"))
        self.assertEqual(list(iter_csv_rows(path)), [{"FoodID": "7", "FoodCode": "70"}])

    def test_encoding_sniffed_block_by_block(self) -> None:
        late_cp1252 = self._tmp / "late.csv"
        late_cp1252.write_bytes(b"FoodID,FoodDescription\n1,Plain\n2,Caf\xe9\n")
        self.assertEqual(_detect_encoding(late_cp1252, block_size=4), "cp1252")

        # A multi-byte character split across two blocks is still UTF-8.
        split_utf8 = self._tmp / "split.csv"
        split_utf8.write_bytes("abé\n".encode("utf-8"))
        self.assertEqual(_detect_encoding(split_utf8, block_size=3), "utf-8-sig")

    def test_malformed_rows_are_skipped(self) -> None:
        path = self._tmp / "NUTRIENT AMOUNT.csv"
        path.write_text("FoodID,NutrientID,NutrientValue\n1,203,5\n2,203,6,extra,cols\n3,203,7\n", encoding="utf-8")
        with self.assertLogs("nutrient_file.etl.csv_source", level="WARNING"):
            rows = list(iter_csv_rows(path))
        self.assertEqual([r["FoodID"] for r in rows], ["1", "3"])


if __name__ == "__main__":
    unittest.main()
