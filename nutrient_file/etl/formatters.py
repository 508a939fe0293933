# -*- coding: utf-8 -*-
"""ETL — output record shapes written into shards."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from .models import FoodState

OUTPUT_FORMATS = ("canonical", "legacy", "full")


def _fct_gluc(state: FoodState) -> Optional[float]:
    derived = state.derived.get("FctGluc")
    return derived.value if derived is not None else None


def _measures(state: FoodState) -> list:
    return [m.model_dump(by_alias=True) for m in state.measures]


def to_full(state: FoodState) -> Dict[str, Any]:
    """Internal aggregate shape, with CNF column names."""
    out: Dict[str, Any] = {
        "FoodID": state.food_id,
        "FoodCode": state.food_code,
        "FoodDescription": state.food_description,
        "FoodDescriptionF": state.food_description_f,
        "FoodGroupID": state.food_group_id,
        "FoodSourceID": state.food_source_id,
        "NutrientsById": {nid: n.model_dump() for nid, n in state.nutrients_by_id.items()},
        "TagIndex": dict(state.tag_index),
        "NutrientsByTag": {tag: t.model_dump() for tag, t in state.nutrients_by_tag.items()},
        "Measures": _measures(state),
        "Derived": {name: d.model_dump() for name, d in state.derived.items()},
    }
    if state.provenance:
        out["provenance"] = {"updates": [e.model_dump(by_alias=True) for e in state.provenance]}
    return out


def to_canonical(state: FoodState) -> Dict[str, Any]:
    return {
        "FoodID": state.food_id,
        "FoodCode": state.food_code,
        "Description": state.food_description or state.food_description_f,
        "FoodGroupID": state.food_group_id,
        "Measures": _measures(state),
        "FctGluc": _fct_gluc(state),
        "Nutrients": [
            {
                "NutrientID": nid,
                "tag": n.tag,
                "value": n.value,
                "unit": n.unit,
                "decimals": n.decimals,
                "provenance": n.provenance or None,
            }
            for nid, n in state.nutrients_by_id.items()
        ],
        "TagIndex": dict(state.tag_index),
        "NutrientsByTag": {tag: t.model_dump() for tag, t in state.nutrients_by_tag.items()},
    }


def to_legacy(state: FoodState) -> Dict[str, Any]:
    """Flat schema: nutrient ids become top-level keys holding the value."""
    out: Dict[str, Any] = {
        "FoodID": state.food_id,
        "FoodCode": state.food_code,
        "FoodGroupID": state.food_group_id,
        "FoodSourceID": state.food_source_id,
        "FoodDescription": state.food_description,
        "FoodDescriptionF": state.food_description_f,
    }
    for nid, n in state.nutrients_by_id.items():
        out[nid] = n.value
    out["FctGluc"] = _fct_gluc(state)
    return out


FORMATTERS: Dict[str, Callable[[FoodState], Dict[str, Any]]] = {
    "canonical": to_canonical,
    "legacy": to_legacy,
    "full": to_full,
}


def format_record(state: FoodState, output_format: str = "canonical") -> Dict[str, Any]:
    try:
        formatter = FORMATTERS[output_format]
    except KeyError as exc:
        raise ValueError(f"Unknown output format: {output_format}") from exc
    return formatter(state)
