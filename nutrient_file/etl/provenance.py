# -*- coding: utf-8 -*-
"""ETL — provenance event helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .models import ProvenanceEvent


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def safe_trim_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def normalize_prov_keys(keys: Mapping[str, Any]) -> Dict[str, str]:
    """Trim key values, drop empty ones, keep numeric zero as "0"."""
    out: Dict[str, str] = {}
    for k, v in keys.items():
        if isinstance(v, (int, float)) and not isinstance(v, bool) and v == 0:
            out[k] = "0"
            continue
        s = safe_trim_id(v)
        if s is not None:
            out[k] = s
    return out


def make_prov_event(
    source_file: str,
    action: str,
    table: str,
    keys: Mapping[str, Any],
    *,
    timestamp: Optional[str] = None,
) -> ProvenanceEvent:
    return ProvenanceEvent(
        source_file=source_file,
        action=action,
        table=table,
        keys=normalize_prov_keys(keys),
        timestamp=timestamp or utc_now(),
    )


def make_nutrient_prov_keys(food_id: Any, nutrient_id: Any) -> Dict[str, str]:
    keys: Dict[str, Any] = {"FoodID": str(food_id)}
    nid = safe_trim_id(nutrient_id)
    if nid:
        keys["NutrientID"] = nid
    return normalize_prov_keys(keys)
