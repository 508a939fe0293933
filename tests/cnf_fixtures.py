# -*- coding: utf-8 -*-
"""Small CNF-shaped CSV fixtures shared by the test modules."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

import httpx

NUTRIENT_NAME_HEADER = [
    "NutrientID",
    "NutrientCode",
    "NutrientSymbol",
    "NutrientUnit",
    "NutrientName",
    "NutrientNameF",
    "Tagname",
    "NutrientDecimals",
]
FOOD_NAME_HEADER = [
    "FoodID",
    "FoodCode",
    "FoodGroupID",
    "FoodSourceID",
    "FoodDescription",
    "FoodDescriptionF",
]
CONVERSION_FACTOR_HEADER = ["FoodID", "MeasureID", "ConversionFactorValue", "ConvFactorDateOfEntry"]
NUTRIENT_AMOUNT_HEADER = [
    "FoodID",
    "NutrientID",
    "NutrientValue",
    "StandardError",
    "NumberofObservations",
    "NutrientSourceID",
    "NutrientDateOfEntry",
]

NUTRIENT_NAMES = [
    ["203", "203", "PROT", "g", "PROTEIN", "PROTEINES", "PROCNT", "2"],
    ["205", "205", "CHO", "g", "CARBOHYDRATE, TOTAL", "GLUCIDES", "chocdf", "2"],
    ["291", "291", "TDF", "g", "FIBRE, TOTAL DIETARY", "FIBRES", "FIBTG", "1"],
    ["208", "208", "KCAL", "kCal", "ENERGY (KILOCALORIES)", "ENERGIE", "ENERC_KCAL", "0"],
]
FOOD_NAMES = [
    ["10", "10", "1", "0", "Cheese, blue", "Fromage bleu"],
    ["20", "20", "1", "0", "Cheese, brick", "Fromage brick"],
    ["30", "30", "9", "0", "Apple, raw", "Pomme crue"],
    ["40", "40", "9", "0", "Water, tap", "Eau du robinet"],
]
CONVERSION_FACTORS = [
    ["10", "341", "0.3", "2005-01-01"],
    ["10", "342", "1.2", "2005-01-01"],
    ["20", "341", "0.25", "2005-01-01"],
]
NUTRIENT_AMOUNTS = [
    ["10", "203", "21.4", "", "", "0", "1993-01-01"],
    ["10", "205", "50", "", "", "0", "1993-01-01"],
    ["10", "291", "10", "", "", "0", "1993-01-01"],
    ["20", "203", "23.2", "", "", "0", "1993-01-01"],
    ["20", "205", "30", "", "", "0", "1993-01-01"],
    ["30", "203", "0.26", "", "", "0", "1993-01-01"],
]


def write_csv(path: Path, header: Sequence[str], rows: Iterable[Sequence[str]], encoding: str = "utf-8") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding=encoding) as fh:
        writer = csv.writer(fh)
        writer.writerow(header)
        for row in rows:
            writer.writerow(row)
    return path


def write_baseline(csv_dir: Path) -> Path:
    write_csv(csv_dir / "NUTRIENT NAME.csv", NUTRIENT_NAME_HEADER, NUTRIENT_NAMES)
    write_csv(csv_dir / "FOOD NAME.csv", FOOD_NAME_HEADER, FOOD_NAMES)
    write_csv(csv_dir / "CONVERSION FACTOR.csv", CONVERSION_FACTOR_HEADER, CONVERSION_FACTORS)
    write_csv(csv_dir / "NUTRIENT AMOUNT.csv", NUTRIENT_AMOUNT_HEADER, NUTRIENT_AMOUNTS)
    return csv_dir


def write_update(update_dir: Path, table: str, action: str, rows: List[List[str]]) -> Path:
    headers = {
        "NUTRIENT NAME": NUTRIENT_NAME_HEADER,
        "FOOD NAME": FOOD_NAME_HEADER,
        "CONVERSION FACTOR": CONVERSION_FACTOR_HEADER,
        "NUTRIENT AMOUNT": NUTRIENT_AMOUNT_HEADER,
    }
    return write_csv(update_dir / f"{table} {action}.csv", headers[table], rows)


def make_dirs(root: Path) -> Tuple[Path, Path]:
    csv_dir = write_baseline(root / "csv")
    update_dir = root / "update"
    update_dir.mkdir(parents=True, exist_ok=True)
    return csv_dir, update_dir


def fixed_clock() -> str:
    return "2024-01-01T00:00:00Z"


class ShardServer:
    """``httpx.MockTransport`` handler serving a producer output directory."""

    base_url = "http://cnf.test/data/"

    def __init__(self, root: Path, manifest_name: str = "canadian_nutrient_file.manifest.json") -> None:
        self.root = root
        self.manifest_name = manifest_name
        self.requests: List[str] = []
        self.corrupt: Set[str] = set()
        self.fail: Set[str] = set()
        self.manifest_status = 200
        self.on_shard: Optional[Callable[[str], None]] = None

    @property
    def manifest_url(self) -> str:
        return self.base_url + self.manifest_name

    @property
    def shard_base_url(self) -> str:
        return self.base_url + "shards/"

    def shard_downloads(self) -> List[str]:
        return [p.rsplit("/", 1)[1] for p in self.requests if "/shards/" in p]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path == "/data/" + self.manifest_name:
            if self.manifest_status != 200:
                return httpx.Response(self.manifest_status, text="unavailable")
            return httpx.Response(
                200,
                content=(self.root / self.manifest_name).read_bytes(),
                headers={"content-type": "application/json"},
            )
        if path.startswith("/data/shards/"):
            name = path.rsplit("/", 1)[1]
            target = self.root / "shards" / name
            if name in self.fail:
                return httpx.Response(500, text="boom")
            if not target.is_file():
                return httpx.Response(404, text="not found")
            data = target.read_bytes()
            if name in self.corrupt:
                data = data[:-1] + bytes([data[-1] ^ 0xFF])
            if self.on_shard is not None:
                self.on_shard(name)
            # Left unread so the client can consume it with iter_raw(), as from a socket.
            return httpx.Response(200, stream=httpx.ByteStream(data))
        return httpx.Response(404, text="not found")
