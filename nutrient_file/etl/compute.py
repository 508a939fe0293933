# -*- coding: utf-8 -*-
"""ETL — derived fields computed from the aggregate.

Pure functions: inputs are resolved by nutrient tag, nothing is mutated and a
missing input always yields a missing result (never zero).
"""

from __future__ import annotations

from typing import Dict, Optional

from .models import DerivedField, FoodState

FCT_GLUC_FORMULA = "(Total Carbohydrate g per 100g - Dietary Fiber g per 100g) / 100"


def resolve_tag_value(state: FoodState, tag: str) -> Optional[float]:
    ids = state.tag_index.get(tag)
    if isinstance(ids, list):
        ids = ids[0] if ids else None
    if not ids:
        return None
    entry = state.nutrients_by_id.get(ids)
    return entry.value if entry is not None else None


def compute_fct_gluc(state: FoodState) -> Optional[float]:
    """Available carbohydrate factor: (CHOCDF - FIBTG) / 100."""
    chocdf = resolve_tag_value(state, "CHOCDF")
    fibtg = resolve_tag_value(state, "FIBTG")
    if chocdf is None or fibtg is None:
        return None
    return (chocdf - fibtg) / 100


def compute_derived(state: FoodState) -> Dict[str, DerivedField]:
    return {
        "FctGluc": DerivedField(
            value=compute_fct_gluc(state),
            formula=FCT_GLUC_FORMULA,
            inputs={
                "CHOCDF": resolve_tag_value(state, "CHOCDF"),
                "FIBTG": resolve_tag_value(state, "FIBTG"),
            },
        )
    }
