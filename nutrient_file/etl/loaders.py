# -*- coding: utf-8 -*-
"""ETL — baseline table loaders.

Each loader turns one baseline CSV into an in-memory table keyed by its
natural identity. Joined tables can be filtered against a limited identity
set (sampling runs).
"""

from __future__ import annotations

import logging
from typing import AbstractSet, Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .csv_source import CsvSource
from .models import Measure, NutrientMeta, NutrientValue
from .provenance import safe_trim_id

log = logging.getLogger(__name__)

NUTRIENT_NAME = "NUTRIENT NAME"
FOOD_NAME = "FOOD NAME"
CONVERSION_FACTOR = "CONVERSION FACTOR"
NUTRIENT_AMOUNT = "NUTRIENT AMOUNT"

FOOD_NAME_COLUMNS = (
    "FoodCode",
    "FoodDescription",
    "FoodDescriptionF",
    "FoodGroupID",
    "FoodSourceID",
)

FoodNameTable = Dict[str, Dict[str, Optional[str]]]
NutrientMetaTable = Dict[str, NutrientMeta]
ConversionTable = Dict[str, List[Measure]]


def to_float(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        log.warning("non-numeric value %r treated as missing", raw)
        return None


def to_int(raw: Any) -> Optional[int]:
    value = to_float(raw)
    return int(value) if value is not None else None


def nutrient_meta_from_row(row: Mapping[str, Any], nutrient_id: str) -> NutrientMeta:
    tag = safe_trim_id(row.get("Tagname"))
    return NutrientMeta(
        id=nutrient_id,
        code=safe_trim_id(row.get("NutrientCode")),
        symbol=safe_trim_id(row.get("NutrientSymbol")),
        unit=safe_trim_id(row.get("NutrientUnit")),
        name=safe_trim_id(row.get("NutrientName")),
        tag=tag.upper() if tag else None,
        decimals=to_int(row.get("NutrientDecimals")),
    )


def food_name_from_row(row: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    return {col: safe_trim_id(row.get(col)) for col in FOOD_NAME_COLUMNS}


def measure_from_row(row: Mapping[str, Any], measure_id: str) -> Measure:
    return Measure(
        measure_id=measure_id,
        # Zero factors are meaningless for unit conversion; keep them as missing.
        conversion_factor_value=to_float(row.get("ConversionFactorValue")) or None,
        date_of_entry=safe_trim_id(row.get("ConvFactorDateOfEntry")),
    )


def load_nutrient_names(source: CsvSource) -> NutrientMetaTable:
    table: NutrientMetaTable = {}
    for row in source.baseline_rows(NUTRIENT_NAME):
        nid = safe_trim_id(row.get("NutrientID"))
        if not nid:
            log.warning("%s: row without NutrientID skipped", NUTRIENT_NAME)
            continue
        table[nid] = nutrient_meta_from_row(row, nid)
    log.info("Loaded %s nutrient definitions", len(table))
    return table


def load_food_names(source: CsvSource, sample_limit: int = 0) -> FoodNameTable:
    """Load FOOD NAME; ``sample_limit > 0`` keeps the first N distinct FoodIDs."""
    table: FoodNameTable = {}
    for row in source.baseline_rows(FOOD_NAME):
        fid = safe_trim_id(row.get("FoodID"))
        if not fid:
            log.warning("%s: row without FoodID skipped", FOOD_NAME)
            continue
        if sample_limit and fid not in table and len(table) >= sample_limit:
            # Remaining rows fall outside the sample.
            break
        table[fid] = food_name_from_row(row)
    log.info("Loaded %s food names (sample limit: %s)", len(table), sample_limit or "none")
    return table


def load_conversion_factors(
    source: CsvSource, food_ids: Optional[AbstractSet[str]] = None
) -> ConversionTable:
    by_food: ConversionTable = {}
    for row in source.baseline_rows(CONVERSION_FACTOR):
        fid = safe_trim_id(row.get("FoodID"))
        mid = safe_trim_id(row.get("MeasureID"))
        if not fid or not mid:
            log.warning("%s: row without FoodID/MeasureID skipped", CONVERSION_FACTOR)
            continue
        if food_ids is not None and fid not in food_ids:
            continue
        by_food.setdefault(fid, []).append(measure_from_row(row, mid))
    return by_food


def nutrient_value_from_row(row: Mapping[str, Any], meta: Optional[NutrientMeta]) -> NutrientValue:
    return NutrientValue(
        tag=meta.tag if meta else None,
        value=to_float(row.get("NutrientValue")),
        unit=meta.unit if meta else None,
        decimals=meta.decimals if meta else None,
        provenance={
            "NutrientSourceID": safe_trim_id(row.get("NutrientSourceID")),
            "NutrientDateOfEntry": safe_trim_id(row.get("NutrientDateOfEntry")),
        },
    )


def iter_nutrient_amounts(
    source: CsvSource,
    nutrient_meta: NutrientMetaTable,
    food_ids: Optional[AbstractSet[str]] = None,
) -> Iterator[Tuple[str, str, NutrientValue]]:
    """Yield ``(food_id, nutrient_id, value)`` for every usable NUTRIENT AMOUNT row."""
    for row in source.baseline_rows(NUTRIENT_AMOUNT):
        fid = safe_trim_id(row.get("FoodID"))
        nid = safe_trim_id(row.get("NutrientID"))
        if not fid or not nid:
            log.warning("%s: row without FoodID/NutrientID skipped", NUTRIENT_AMOUNT)
            continue
        if food_ids is not None and fid not in food_ids:
            continue
        yield fid, nid, nutrient_value_from_row(row, nutrient_meta.get(nid))
