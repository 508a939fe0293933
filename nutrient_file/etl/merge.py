# -*- coding: utf-8 -*-
"""ETL — apply CHANGE / ADD / DELETE update tables.

Per table the three update files are applied strictly in the order
CHANGE -> ADD -> DELETE:

- CHANGE merges non-empty incoming fields into an existing entry, or creates
  the entry when it is missing.
- ADD replaces any existing entry. Overwrites are counted and summarized once
  per table instead of logged per row.
- DELETE removes the entry; deleting something absent is a no-op.

All per-run bookkeeping (warn-dedup sets, counters, deleted identities) lives
in a ``MergeContext`` that the caller creates and passes through, so two runs
in one process never share state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, MutableMapping, Optional, Set, Tuple

from .csv_source import CsvSource
from .loaders import (
    CONVERSION_FACTOR,
    FOOD_NAME,
    NUTRIENT_AMOUNT,
    NUTRIENT_NAME,
    ConversionTable,
    FoodNameTable,
    NutrientMetaTable,
    food_name_from_row,
    measure_from_row,
    nutrient_meta_from_row,
    nutrient_value_from_row,
)
from .models import FoodState, NutrientValue, ProvenanceEvent, TagLookup
from .provenance import make_nutrient_prov_keys, make_prov_event, safe_trim_id, utc_now

log = logging.getLogger(__name__)

UPDATE_ORDER = ("CHANGE", "ADD", "DELETE")

Aggregate = Dict[str, FoodState]


@dataclass
class MergeContext:
    """State for one producer run."""

    clock: Callable[[], str] = utc_now
    # When set (sampling runs) updates only touch these identities.
    identity_filter: Optional[Set[str]] = None
    create_log_limit: int = 10
    deleted_food_ids: Set[str] = field(default_factory=set)
    warned_add_keys: Dict[str, Set[str]] = field(default_factory=dict)
    add_overwrites: Dict[str, int] = field(default_factory=dict)
    created_count: int = 0
    created_logged: int = 0
    orphans_skipped: int = 0

    def event(self, source_file: str, action: str, table: str, keys: Mapping[str, Any]) -> ProvenanceEvent:
        return make_prov_event(source_file, action, table, keys, timestamp=self.clock())

    def in_scope(self, food_id: str) -> bool:
        return self.identity_filter is None or food_id in self.identity_filter

    def note_add_overwrite(self, table: str, key: str) -> None:
        seen = self.warned_add_keys.setdefault(table, set())
        if key in seen:
            return
        seen.add(key)
        self.add_overwrites[table] = self.add_overwrites.get(table, 0) + 1

    def log_summary(self) -> None:
        for table, count in sorted(self.add_overwrites.items()):
            log.info("%s ADD overwrote %s existing entries (details suppressed)", table, count)
        if self.created_count:
            suppressed = self.created_count - self.created_logged
            if suppressed > 0:
                log.info(
                    "created %s minimal food records; %s suppressed (first %s shown)",
                    self.created_count,
                    suppressed,
                    self.created_logged,
                )
            else:
                log.info("created %s minimal food records", self.created_count)
        if self.orphans_skipped:
            log.info("dropped %s update events for deleted foods", self.orphans_skipped)


def merge_non_empty(target: MutableMapping[str, Any], src: Mapping[str, Any]) -> None:
    """Copy values from ``src`` unless they are empty strings or missing."""
    for key, value in src.items():
        if value is None or value == "":
            continue
        target[key] = value


def iter_updates(source: CsvSource, table: str) -> Iterator[Tuple[str, str, Dict[str, str]]]:
    """Yield ``(action, file_name, row)`` for ``table`` in CHANGE, ADD, DELETE order."""
    for action in UPDATE_ORDER:
        if not source.update_exists(table, action):
            continue
        file_name = source.update_file_name(table, action)
        log.info("Applying %s", file_name)
        for row in source.update_rows(table, action):
            yield action, file_name, row


# ---- nutrient metadata ----


def apply_nutrient_name_updates(table: NutrientMetaTable, source: CsvSource, ctx: MergeContext) -> None:
    for action, file_name, row in iter_updates(source, NUTRIENT_NAME):
        nid = safe_trim_id(row.get("NutrientID"))
        if not nid:
            log.warning("%s: row without NutrientID skipped", file_name)
            continue
        if action == "DELETE":
            table.pop(nid, None)
            continue
        incoming = nutrient_meta_from_row(row, nid)
        existing = table.get(nid)
        if action == "CHANGE" and existing is not None:
            merged = existing.model_dump()
            merge_non_empty(merged, incoming.model_dump(exclude_none=True))
            table[nid] = type(existing).model_validate(merged)
            continue
        if action == "ADD" and existing is not None:
            ctx.note_add_overwrite(NUTRIENT_NAME, nid)
        table[nid] = incoming


# ---- food names (identity table) ----


def apply_food_name_updates(table: FoodNameTable, source: CsvSource, ctx: MergeContext) -> List[ProvenanceEvent]:
    events: List[ProvenanceEvent] = []
    for action, file_name, row in iter_updates(source, FOOD_NAME):
        fid = safe_trim_id(row.get("FoodID"))
        if not fid:
            log.warning("%s: row without FoodID skipped", file_name)
            continue
        if action == "DELETE":
            # Remembered even when absent so other tables cannot resurrect it.
            ctx.deleted_food_ids.add(fid)
            if table.pop(fid, None) is not None:
                events.append(ctx.event(file_name, action, FOOD_NAME, {"FoodID": fid}))
            continue
        if not ctx.in_scope(fid):
            continue
        incoming = food_name_from_row(row)
        existing = table.get(fid)
        if action == "CHANGE" and existing is not None:
            merge_non_empty(existing, incoming)
        else:
            if action == "ADD" and existing is not None:
                ctx.note_add_overwrite(FOOD_NAME, fid)
            table[fid] = incoming
        events.append(ctx.event(file_name, action, FOOD_NAME, {"FoodID": fid}))
    return events


# ---- conversion factors ----


def apply_conversion_factor_updates(
    by_food: ConversionTable, source: CsvSource, ctx: MergeContext
) -> List[ProvenanceEvent]:
    events: List[ProvenanceEvent] = []
    for action, file_name, row in iter_updates(source, CONVERSION_FACTOR):
        fid = safe_trim_id(row.get("FoodID"))
        mid = safe_trim_id(row.get("MeasureID"))
        if not fid or not mid:
            log.warning("%s: row without FoodID/MeasureID skipped", file_name)
            continue
        if not ctx.in_scope(fid):
            continue
        measures = by_food.get(fid, [])
        idx = next((i for i, m in enumerate(measures) if m.measure_id == mid), None)
        if action == "DELETE":
            if idx is None:
                continue
            del measures[idx]
        else:
            incoming = measure_from_row(row, mid)
            if action == "CHANGE" and idx is not None:
                merged = measures[idx].model_dump()
                merge_non_empty(merged, incoming.model_dump(exclude_none=True))
                measures[idx] = type(incoming).model_validate(merged)
            elif idx is not None:
                if action == "ADD":
                    ctx.note_add_overwrite(CONVERSION_FACTOR, f"{fid}|{mid}")
                measures[idx] = incoming
            else:
                measures.append(incoming)
        by_food[fid] = measures
        events.append(ctx.event(file_name, action, CONVERSION_FACTOR, {"FoodID": fid, "MeasureID": mid}))
    return events


# ---- aggregate ----


def new_food_state(food_id: str, names: Optional[Mapping[str, Optional[str]]] = None) -> FoodState:
    names = names or {}
    return FoodState(
        food_id=food_id,
        food_code=names.get("FoodCode"),
        food_description=names.get("FoodDescription"),
        food_description_f=names.get("FoodDescriptionF"),
        food_group_id=names.get("FoodGroupID"),
        food_source_id=names.get("FoodSourceID"),
    )


def build_aggregate(food_names: FoodNameTable, conversions: ConversionTable) -> Aggregate:
    aggregate: Aggregate = {}
    for fid, names in food_names.items():
        state = new_food_state(fid, names)
        state.measures = list(conversions.get(fid, []))
        aggregate[fid] = state
    return aggregate


def attach_event(
    aggregate: Aggregate,
    evt: ProvenanceEvent,
    ctx: MergeContext,
    conversions: Optional[ConversionTable] = None,
) -> Optional[FoodState]:
    """Record ``evt`` on its food, creating a minimal record if needed.

    Returns the affected record, or None when the event was dropped.
    """
    fid = evt.keys.get("FoodID")
    if not fid:
        return None
    if not ctx.in_scope(fid):
        log.debug("event for %s outside sampled identities skipped", fid)
        return None
    state = aggregate.get(fid)
    if state is not None:
        state.provenance.append(evt)
        return state

    if evt.action == "DELETE":
        log.debug("DELETE for unknown FoodID %s from %s ignored", fid, evt.source_file)
        return None
    is_identity_event = evt.table == FOOD_NAME
    if fid in ctx.deleted_food_ids and not is_identity_event:
        ctx.orphans_skipped += 1
        log.info("ORPHAN_ADD_SKIPPED FoodID=%s file=%s action=%s", fid, evt.source_file, evt.action)
        return None

    ctx.created_count += 1
    if ctx.created_logged < ctx.create_log_limit:
        ctx.created_logged += 1
        log.info("creating minimal food record %s due to %s %s", fid, evt.source_file, evt.action)
    state = new_food_state(fid)
    state.measures = list((conversions or {}).get(fid, []))
    state.provenance.append(evt)
    aggregate[fid] = state
    return state


def index_nutrient(state: FoodState, nutrient_id: str, entry: NutrientValue) -> None:
    """Store ``entry`` and keep the tag index and by-tag lookup consistent."""
    previous = state.nutrients_by_id.get(nutrient_id)
    if previous is not None and previous.tag != entry.tag:
        remove_nutrient(state, nutrient_id)
    state.nutrients_by_id[nutrient_id] = entry
    tag = entry.tag
    if not tag:
        return
    existing = state.tag_index.get(tag)
    if existing is None:
        state.tag_index[tag] = nutrient_id
    elif isinstance(existing, list):
        if nutrient_id not in existing:
            existing.append(nutrient_id)
    elif existing != nutrient_id:
        # Collision: promote to a list, never drop the earlier id.
        state.tag_index[tag] = [existing, nutrient_id]
    state.nutrients_by_tag[tag] = TagLookup(id=nutrient_id, value=entry.value, unit=entry.unit)


def remove_nutrient(state: FoodState, nutrient_id: str) -> bool:
    if state.nutrients_by_id.pop(nutrient_id, None) is None:
        return False
    for tag in list(state.tag_index):
        ids = state.tag_index[tag]
        if ids == nutrient_id:
            del state.tag_index[tag]
        elif isinstance(ids, list) and nutrient_id in ids:
            remaining = [x for x in ids if x != nutrient_id]
            if not remaining:
                del state.tag_index[tag]
            elif len(remaining) == 1:
                state.tag_index[tag] = remaining[0]
            else:
                state.tag_index[tag] = remaining
    for tag in list(state.nutrients_by_tag):
        if state.nutrients_by_tag[tag].id == nutrient_id:
            del state.nutrients_by_tag[tag]
    return True


def populate_nutrient_amounts(aggregate: Aggregate, rows: Iterator[Tuple[str, str, NutrientValue]]) -> int:
    count = 0
    for fid, nid, entry in rows:
        state = aggregate.get(fid)
        if state is None:
            continue
        index_nutrient(state, nid, entry)
        count += 1
    return count


def apply_nutrient_amount_updates(
    aggregate: Aggregate,
    nutrient_meta: NutrientMetaTable,
    source: CsvSource,
    ctx: MergeContext,
    conversions: Optional[ConversionTable] = None,
) -> None:
    for action, file_name, row in iter_updates(source, NUTRIENT_AMOUNT):
        fid = safe_trim_id(row.get("FoodID"))
        nid = safe_trim_id(row.get("NutrientID"))
        if not fid or not nid:
            log.warning("%s: row without FoodID/NutrientID skipped", file_name)
            continue
        keys = make_nutrient_prov_keys(fid, nid)

        if action == "DELETE":
            state = aggregate.get(fid)
            if state is None or not ctx.in_scope(fid) or not remove_nutrient(state, nid):
                continue
            state.provenance.append(ctx.event(file_name, action, NUTRIENT_AMOUNT, keys))
            continue

        state = attach_event(aggregate, ctx.event(file_name, action, NUTRIENT_AMOUNT, keys), ctx, conversions)
        if state is None:
            continue
        incoming = nutrient_value_from_row(row, nutrient_meta.get(nid))
        existing = state.nutrients_by_id.get(nid)
        if existing is None:
            index_nutrient(state, nid, incoming)
            continue
        if action == "ADD":
            ctx.note_add_overwrite(NUTRIENT_AMOUNT, f"{fid}|{nid}")
            index_nutrient(state, nid, incoming)
            continue
        merged = existing.model_dump()
        merge_non_empty(merged, {k: v for k, v in incoming.model_dump().items() if k != "provenance"})
        provenance = dict(existing.provenance)
        merge_non_empty(provenance, incoming.provenance)
        merged["provenance"] = provenance
        index_nutrient(state, nid, NutrientValue.model_validate(merged))
