"""
Project: Order Intake Assistant
File: context_scoper.py

Pure helpers that decide how much of the working set an inference call sees.

- Modification: only target ∪ context fields (all fields when that union is empty).
- Confirmation and question: the full schema; the answer depends on prior turns
  or on fields the instruction never names.

Methods & Classes
- class ScopedContext (records, schema, fields, full)
- fields_to_include(intent, schema) -> list[str]
- project_records(records, keys) -> list[dict]
- scope_for(intent, records, schema) -> ScopedContext
- full_context(records, schema) -> ScopedContext
- trim_history(history, max_turns) -> list[DialogueTurn]
- render_history(history, title=...) -> str

Dependencies
- Internal: field_schema.FieldSchema, records.Record/DialogueTurn
- Stdlib: dataclasses, typing
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from patch_engine.field_schema import FieldSchema
from patch_engine.records import DialogueTurn, Record

if TYPE_CHECKING:
    from patch_engine.intent_model import Intent

FULL_CONTEXT_CATEGORIES = {"question", "confirmation"}


@dataclass(frozen=True)
class ScopedContext:
    records: List[Dict[str, Any]]
    schema: FieldSchema
    fields: List[str]
    full: bool


def fields_to_include(intent: "Intent", schema: FieldSchema) -> List[str]:
    union = schema.normalize_keys([*intent.target_fields, *intent.context_fields])
    return union or schema.keys()


def project_records(records: Sequence[Record], keys: Sequence[str]) -> List[Dict[str, Any]]:
    # every projected record carries exactly `keys`; absent values become None
    return [{"id": r.id, "data": {k: r.data.get(k) for k in keys}} for r in records]


def full_context(records: Sequence[Record], schema: FieldSchema) -> ScopedContext:
    keys = schema.keys()
    return ScopedContext(records=project_records(records, keys), schema=schema, fields=keys, full=True)


def scope_for(intent: "Intent", records: Sequence[Record], schema: FieldSchema) -> ScopedContext:
    if intent.category in FULL_CONTEXT_CATEGORIES:
        return full_context(records, schema)
    keys = fields_to_include(intent, schema)
    return ScopedContext(
        records=project_records(records, keys),
        schema=schema.subset(keys),
        fields=keys,
        full=len(keys) == len(schema),
    )


# ----------------------------- Conversation memory -----------------------------

def trim_history(history: Optional[Sequence[DialogueTurn]], max_turns: int) -> List[DialogueTurn]:
    """Trailing `max_turns` turns as a new list; the caller's list is left alone."""
    if not history or max_turns <= 0:
        return []
    return list(history[-max_turns:])


def render_history(history: Sequence[DialogueTurn], title: str = "## Previous Conversation") -> str:
    if not history:
        return ""
    lines = [title]
    for turn in history:
        label = "User" if turn.role == "user" else "Assistant"
        lines.append(f"{label}: {turn.content}")
    return "\n".join(lines) + "\n"
