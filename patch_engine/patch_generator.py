"""
Project: Order Intake Assistant
File: patch_generator.py

Second (expensive) inference call of a modification turn. Sees only the scoped
records and schema, plus read-only template strings and catalog guidance, and
returns a candidate patch list. The candidate is untrusted until
patch_validator has checked it.

Methods & Classes
- class PatchCandidate (status, patches, trigger_regeneration, summary, clarification, tokens, model)
- build_patch_prompt(schema, *, catalog_guide=None) -> str           (system instructions)
- build_patch_user_message(records, instruction, history=()) -> str  (data + instruction)
- candidate_from_schema(parsed) -> PatchCandidate
- class PatchGenerator:
  - __init__(model=None, *, history_max_turns=12)
  - generate(instruction, scoped, *, history=(), catalog_guide=None, correlation_id=None, scope=None)

Dependencies
- Internal: models.PatchCandidateSchema/ModelFactory, context_scoper, error_handler
- Stdlib: json, dataclasses, typing
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from patch_engine.context_scoper import ScopedContext, render_history, trim_history
from patch_engine.error_handler import GenerationParseError, StructuredOutputError
from patch_engine.field_schema import FieldSchema
from patch_engine.models import ModelFactory, PatchCandidateSchema
from patch_engine.records import DialogueTurn


@dataclass
class PatchCandidate:
    status: str
    patches: List[Dict[str, Any]]
    trigger_regeneration: bool
    summary: str
    clarification: Optional[str] = None
    tokens: Dict[str, int] = field(default_factory=lambda: {"in": 0, "out": 0})
    model: str = "unknown"


# ---------- Prompt builders ----------
def _template_rules(schema: FieldSchema) -> str:
    templated = schema.templated_fields()
    if not templated:
        return ""
    lines = [
        "",
        "## Field Rules & Templates",
        "The following fields are computed using strict templates. If the user asks to fix or "
        "regenerate these, you MUST follow these patterns:",
    ]
    for f in templated:
        lines.append(
            f'- {f.key}: MUST be formed as "{f.template}". Variables like {{brand.code}} mean '
            '"look up the code for the brand".'
        )
    return "\n".join(lines)


def build_patch_prompt(schema: FieldSchema, *, catalog_guide: Optional[str] = None) -> str:
    prompt = (
        "You generate precise field patches for order line items.\n\n"
        "## Fields\n"
        f"{schema.as_lines(prefix='- ')}"
        f"{_template_rules(schema)}\n\n"
        "## Output Format\n"
        '{"status": "success"|"ambiguous"|"no_changes", '
        '"patches": [{"id": "<record id>", "updates": [{"field": "<field key>", "value": "<new value>"}]}], '
        '"trigger_regeneration": false, "summary": "short description of the change", '
        '"clarification_needed": null}\n\n'
        "## Rules\n"
        "1. Only use field keys listed under Fields; only use record ids present in the data.\n"
        "2. Include a patch only for records whose value actually changes.\n"
        '3. Return "no_changes" with an empty patch list if nothing matches the instruction.\n'
        '4. Return "ambiguous" and fill clarification_needed if the instruction is unclear.\n'
        "5. Set trigger_regeneration=true if you change a field that other fields are computed from.\n"
        "6. Values are strings; write numbers and booleans as plain text (e.g. \"42\", \"true\").\n"
        "7. Use the previous conversation to resolve confirmations like \"yes, do it\".\n"
        "8. Output only the JSON object."
    )
    if catalog_guide:
        prompt += f"\n\n## Catalog\n{catalog_guide.strip()}"
    return prompt


def build_patch_user_message(
    records: Sequence[Dict[str, Any]],
    instruction: str,
    history: Sequence[DialogueTurn] = (),
) -> str:
    return (
        f"{render_history(history)}"
        f"## Data ({len(records)} records)\n"
        f"{json.dumps(list(records), ensure_ascii=False, default=str, separators=(',', ':'))}\n\n"
        "## Instruction\n"
        f"{instruction}\n"
    )


def candidate_from_schema(parsed: PatchCandidateSchema) -> PatchCandidate:
    patches: List[Dict[str, Any]] = []
    for item in parsed.patches:
        updates: Dict[str, Any] = {}
        for upd in item.updates:
            updates[upd.field] = upd.value  # last assignment to a key wins
        patches.append({"id": item.id, "updates": updates})
    return PatchCandidate(
        status=parsed.status,
        patches=patches,
        trigger_regeneration=bool(parsed.trigger_regeneration),
        summary=(parsed.summary or "").strip(),
        clarification=(parsed.clarification_needed or None),
    )


class PatchGenerator:
    def __init__(self, model: Optional[Any] = None, *, history_max_turns: int = 12):
        self._model = model if model is not None else ModelFactory.get("patch")
        self._history_max_turns = history_max_turns

    def generate(
        self,
        instruction: str,
        scoped: ScopedContext,
        *,
        history: Sequence[DialogueTurn] = (),
        catalog_guide: Optional[str] = None,
        correlation_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> PatchCandidate:
        """
        Raises GenerationParseError when the backend's answer cannot be read as
        a patch candidate. InferenceUnavailableError propagates unchanged.
        """
        prompt = (
            build_patch_prompt(scoped.schema, catalog_guide=catalog_guide)
            + "\n\n"
            + build_patch_user_message(
                scoped.records, instruction, trim_history(history, self._history_max_turns)
            )
        )
        try:
            call = self._model(prompt, PatchCandidateSchema, temperature=0.0)
        except GenerationParseError:
            raise
        except StructuredOutputError as e:
            raise GenerationParseError(
                "Failed to parse patch generation response",
                raw=e.raw,
                details={**e.details, "correlation_id": correlation_id, "scope": scope},
            ) from e

        candidate = candidate_from_schema(call["parsed"])
        candidate.tokens = call.get("tokens", {"in": 0, "out": 0})
        candidate.model = call.get("model", "unknown")
        return candidate
