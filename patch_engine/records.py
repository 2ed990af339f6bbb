"""
Project: Order Intake Assistant
File: records.py

Typed shapes that cross the engine boundary: records, patches, undo sessions,
conversation turns, and the request/response models for a turn and an undo.

Methods & Classes
- class Record (id, data)
- class Patch (id, updates, previous) ; reverted() -> Patch
- class Session (session_id, scope_id, patches, created, undone) ; expired(now, ttl_s)
- class DialogueTurn (role, content)
- class FilterCondition (field, operator, value)
- class TurnRequest (instruction, record_ids, conversation_history, allow_questions)
- class TurnResult (tagged on status)
- class UndoResult (session_id, reverted_count, items, summary)

Dependencies
- External: pydantic
- Stdlib: time, typing
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TurnStatus = Literal["success", "no_changes", "ambiguous", "question", "recalculate"]
IntentCategory = Literal["modification", "question", "confirmation", "recalculate", "ambiguous"]
Role = Literal["user", "assistant"]


class Record(BaseModel):
    id: str
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> str:
        return str(v)


class Patch(BaseModel):
    """
    One record's edit. `previous` is filled by the engine from the pre-patch
    record, never by the generator, so every patch can revert itself.
    """
    id: str
    updates: Dict[str, Any]
    previous: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("updates")
    @classmethod
    def _updates_non_empty(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("patch updates must be non-empty")
        return v

    def reverted(self) -> "Patch":
        """The inverse edit: write `previous` back, remembering what it replaces."""
        restore = {k: self.previous.get(k) for k in self.updates}
        return Patch(id=self.id, updates=restore, previous=dict(self.updates))


class Session(BaseModel):
    session_id: str
    scope_id: str
    patches: List[Patch]
    created: float = Field(default_factory=time.time)
    undone: bool = False

    model_config = ConfigDict(frozen=True)

    def expired(self, now: float, ttl_s: int) -> bool:
        return ttl_s > 0 and (now - self.created) > ttl_s


class DialogueTurn(BaseModel):
    role: Role
    content: str

    model_config = ConfigDict(frozen=True)


class FilterCondition(BaseModel):
    field: str
    operator: str = "equals"
    value: str = ""


class TurnRequest(BaseModel):
    instruction: str
    record_ids: Optional[List[str]] = None
    conversation_history: List[DialogueTurn] = Field(default_factory=list)
    allow_questions: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class TurnResult(BaseModel):
    status: TurnStatus
    summary: str
    category: IntentCategory = "modification"
    patches: List[Patch] = Field(default_factory=list)
    session_id: Optional[str] = None
    clarification: Optional[str] = None
    answer: Optional[str] = None
    recalculate_fields: Optional[List[str]] = None
    filter_condition: Optional[FilterCondition] = None
    matching_ids: Optional[List[str]] = None
    trigger_regeneration: bool = False
    items: List[Record] = Field(default_factory=list)
    correlation_id: Optional[str] = None

    @property
    def is_confirmation(self) -> bool:
        return self.category == "confirmation"


class UndoResult(BaseModel):
    session_id: str
    reverted_count: int
    items: List[Record] = Field(default_factory=list)
    summary: str
