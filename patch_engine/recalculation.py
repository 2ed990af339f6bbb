"""
Project: Order Intake Assistant
File: recalculation.py

Deterministic side of a "recalculate" turn: no inference call, just which
records a filter condition selects and how to describe the request. The
template recompute itself belongs to an external collaborator.

Methods & Classes
- OPERATORS: equals | contains | startsWith | endsWith
- normalize_operator(op) -> str            (unknown → equals)
- matches(value, condition) -> bool         (case-insensitive, trimmed)
- matching_ids(records, condition) -> list[str]
- recalculate_summary(fields, matching) -> str

Dependencies
- Internal: records.Record/FilterCondition
- Stdlib: typing
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

from patch_engine.records import FilterCondition, Record

OPERATORS: Dict[str, Callable[[str, str], bool]] = {
    "equals": lambda field_value, wanted: field_value == wanted,
    "contains": lambda field_value, wanted: wanted in field_value,
    "startsWith": lambda field_value, wanted: field_value.startswith(wanted),
    "endsWith": lambda field_value, wanted: field_value.endswith(wanted),
}

_ALIASES = {
    "eq": "equals",
    "equal": "equals",
    "is": "equals",
    "==": "equals",
    "startswith": "startsWith",
    "starts_with": "startsWith",
    "endswith": "endsWith",
    "ends_with": "endsWith",
    "includes": "contains",
}


def normalize_operator(op: Optional[str]) -> str:
    s = (op or "").strip()
    if s in OPERATORS:
        return s
    folded = {k.lower(): k for k in OPERATORS}
    return folded.get(s.lower()) or _ALIASES.get(s.lower(), "equals")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).lower().strip()


def matches(value: Any, condition: FilterCondition) -> bool:
    op = OPERATORS[normalize_operator(condition.operator)]
    return op(_as_text(value), _as_text(condition.value))


def matching_ids(records: Sequence[Record], condition: FilterCondition) -> List[str]:
    return [r.id for r in records if matches(r.data.get(condition.field), condition)]


def recalculate_summary(fields: Sequence[str], matching: Optional[Sequence[str]]) -> str:
    suffix = f" for {len(matching)} matching items" if matching is not None else ""
    if fields:
        return f"Recalculating {', '.join(fields)}{suffix}"
    return f"Recalculating all computed fields{suffix}"
