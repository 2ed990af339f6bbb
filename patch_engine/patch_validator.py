"""
Project: Order Intake Assistant
File: patch_validator.py

Last gate before anything is reported as a change. Pure functions over a
candidate patch list:

- keys are re-checked against the FULL schema (case-insensitive), never the
  scoped one; unknown keys are dropped and logged, never raised
- patches for ids outside the working set are dropped
- values are coerced to the field type
- updates equal to the current value are pruned
- patches left with no updates are dropped
- `previous` is captured from the current record, so each Patch reverts itself

Methods & Classes
- class ValidationReport (patches, unknown_fields, unknown_ids, unchanged, uncoerced)
- validate_patches(candidates, schema, records, *, prune_unchanged=True) -> ValidationReport
- log_drops(report, *, correlation_id=None, scope=None) -> None

Dependencies
- Internal: field_schema.FieldSchema, records.Patch/Record, app_logger
- Stdlib: dataclasses, typing
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from patch_engine import app_logger
from patch_engine.field_schema import FieldSchema
from patch_engine.records import Patch, Record


# ----------------------------- Module helpers ---------------------------------

def _same_value(current: Any, new: Any) -> bool:
    if current == new:
        return True
    if current is None or new is None:
        return False
    if isinstance(current, bool) or isinstance(new, bool):
        return False
    return str(current).strip() == str(new).strip()


@dataclass
class ValidationReport:
    patches: List[Patch]
    unknown_fields: Dict[str, List[str]] = field(default_factory=dict)
    unknown_ids: List[str] = field(default_factory=list)
    unchanged: Dict[str, List[str]] = field(default_factory=dict)
    uncoerced: Dict[str, List[str]] = field(default_factory=dict)  # numeric fields kept as text

    @property
    def dropped_any(self) -> bool:
        return bool(self.unknown_fields or self.unknown_ids or self.unchanged or self.uncoerced)


def validate_patches(
    candidates: Sequence[Mapping[str, Any]],
    schema: FieldSchema,
    records: Sequence[Record],
    *,
    prune_unchanged: bool = True,
) -> ValidationReport:
    by_id = {r.id: r for r in records}
    merged: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []
    report = ValidationReport(patches=[])

    for cand in candidates:
        rid = str(cand.get("id"))
        if rid not in by_id:
            if rid not in report.unknown_ids:
                report.unknown_ids.append(rid)
            continue
        for k, v in (cand.get("updates") or {}).items():
            ck = schema.canonical_key(k)
            if ck is None:
                report.unknown_fields.setdefault(rid, []).append(str(k))
                continue
            if rid not in merged:
                merged[rid] = {}
                order.append(rid)
            value = schema.coerce(ck, v)
            fdef = schema.get(ck)
            if fdef is not None and fdef.type == "number" and isinstance(value, str):
                report.uncoerced.setdefault(rid, []).append(ck)
            merged[rid][ck] = value

    for rid in order:
        current = by_id[rid].data
        updates: Dict[str, Any] = {}
        for k, v in merged[rid].items():
            if prune_unchanged and _same_value(current.get(k), v):
                report.unchanged.setdefault(rid, []).append(k)
                continue
            updates[k] = v
        if updates:
            report.patches.append(
                Patch(id=rid, updates=updates, previous={k: current.get(k) for k in updates})
            )
    return report


def log_drops(report: ValidationReport, *, correlation_id: Optional[str] = None, scope: Optional[str] = None) -> None:
    if not report.dropped_any:
        return
    app_logger.log_engine_event(
        "PATCHES_DROPPED",
        {
            "unknown_fields": report.unknown_fields,
            "unknown_ids": report.unknown_ids,
            "unchanged": report.unchanged,
            "uncoerced": report.uncoerced,
            "kept": len(report.patches),
        },
        correlation_id=correlation_id,
        scope=scope,
    )
