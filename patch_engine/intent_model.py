# intent_model.py (fast structured call; never raises on malformed output)

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from patch_engine import app_logger
from patch_engine.context_scoper import render_history, trim_history
from patch_engine.error_handler import InferenceUnavailableError, StructuredOutputError
from patch_engine.field_schema import FieldSchema
from patch_engine.models import IntentSchema, ModelFactory
from patch_engine.records import DialogueTurn, FilterCondition, IntentCategory

DEFAULT_CLARIFICATION = "Which field would you like to change?"

# A whole utterance made only of affirmations ("yes", "ok do it", "yes please, apply that").
_CONFIRMATION_CUE = (
    r"(?:yes|yeah|yep|yup|sure|ok|okay|please|go ahead|do it|do that|"
    r"apply (?:it|that|them|those|this|the changes?)|confirm(?:ed)?|proceed|"
    r"sounds good|correct|that'?s right|go for it|let'?s do it)"
)
_CONFIRMATION_RE = re.compile(rf"^\s*(?:{_CONFIRMATION_CUE}[\s,.!]*)+$", re.IGNORECASE)


@dataclass
class Intent:
    target_fields: List[str]
    context_fields: List[str]
    category: IntentCategory
    all_rows: bool = True
    filter_condition: Optional[FilterCondition] = None
    recalculate_fields: List[str] = field(default_factory=list)
    clarification: Optional[str] = None
    fallback: bool = False
    tokens: Dict[str, int] = field(default_factory=lambda: {"in": 0, "out": 0})
    model: str = "deterministic"


def looks_like_confirmation(text: str) -> bool:
    return bool(_CONFIRMATION_RE.match(text or ""))


def build_intent_prompt(instruction: str, schema: FieldSchema, history: Sequence[DialogueTurn] = ()) -> str:
    schema_doc = ", ".join(f"{k}: {label}" for k, label in schema.labels().items())
    return (
        f"{render_history(history)}"
        "Analyze this instruction and identify which data fields are involved.\n\n"
        f"Fields: {schema_doc}\n\n"
        f'Instruction: "{instruction}"\n\n'
        "Return ONLY one JSON object:\n"
        "{\n"
        '  "target_fields": ["field_key"],    # fields that will be MODIFIED with specific values\n'
        '  "context_fields": ["field_key"],   # fields needed for FILTERING or ANSWERING\n'
        '  "all_rows": true,                  # false if the instruction targets specific items\n'
        '  "is_ambiguous": false,\n'
        '  "is_question": false,              # true if asking ABOUT data (count, list, check)\n'
        '  "is_confirmation": false,          # true if confirming a previous suggestion\n'
        '  "is_recalculate": false,           # ONLY true to REGENERATE computed fields FROM THEIR TEMPLATES\n'
        '  "recalculate_fields": [],          # computed field keys to regenerate ([] = all computed fields)\n'
        '  "filter_condition": null,          # e.g. {"field": "size", "operator": "equals", "value": "42"}\n'
        '  "clarification_needed": null\n'
        "}\n\n"
        "CRITICAL RULES:\n"
        '1. MODIFICATIONS: "change X to Y", "set X to Y", "update X to Y", "make X be Y" SET a field to a value. '
        "Put the field in target_fields; is_recalculate=false.\n"
        '2. RECALCULATE: ONLY when the user only says "recalculate", "regenerate", "recompute" or "refresh" '
        "without any value change.\n"
        '3. COMPOUND: "change X ... and recalculate Y" is a MODIFICATION of X. Put X in target_fields and '
        'IGNORE the "and recalculate" part.\n'
        '4. Confirmations like "yes", "do it", "apply that" -> is_confirmation=true.\n'
        '5. Questions like "how many", "list", "show", "which" -> is_question=true.\n'
        "6. filter_condition.operator is one of: equals, contains, startsWith, endsWith.\n"
        "7. Only use field keys from the list above.\n\n"
        "Examples:\n"
        '- "Set all years to 2025" -> target_fields: ["year"], is_recalculate: false\n'
        '- "Change all seasons to winter and recalculate SKUs" -> target_fields: ["season"], is_recalculate: false\n'
        '- "Recalculate the SKU" -> target_fields: [], is_recalculate: true, recalculate_fields: ["sku"]\n'
        '- "Regenerate all computed fields" -> is_recalculate: true, recalculate_fields: []\n'
        '- "Refresh SKU for items with size 42" -> is_recalculate: true, recalculate_fields: ["sku"], all_rows: false, '
        'filter_condition: {"field": "size", "operator": "equals", "value": "42"}\n'
        '- "How many items?" -> is_question: true\n'
        '- "Yes, do it" -> is_confirmation: true\n'
    )


def fallback_intent(schema: FieldSchema, instruction: str = "") -> Intent:
    """Permissive default: every field is a target, modify, never ambiguous."""
    category: IntentCategory = "confirmation" if looks_like_confirmation(instruction) else "modification"
    return Intent(
        target_fields=schema.keys(),
        context_fields=[],
        category=category,
        all_rows=True,
        fallback=True,
        model="fallback",
    )


def _filter_from(parsed: IntentSchema, schema: FieldSchema) -> Optional[FilterCondition]:
    fc = parsed.filter_condition
    if fc is None:
        return None
    key = schema.canonical_key(fc.field)
    if key is None:
        return None
    return FilterCondition(field=key, operator=fc.operator, value=fc.value)


def resolve_intent(parsed: IntentSchema, schema: FieldSchema, instruction: str = "") -> Intent:
    """
    Collapse the model's flags into exactly one category.

    Precedence: confirmation > question > modification with concrete targets
    > recalculate > ambiguous > modification.
    """
    targets = schema.normalize_keys(parsed.target_fields)
    context = schema.normalize_keys(parsed.context_fields)
    recalc = schema.normalize_keys(parsed.recalculate_fields)
    filt = _filter_from(parsed, schema)
    if filt is not None and filt.field not in context:
        context.append(filt.field)

    base: Dict[str, Any] = dict(
        target_fields=targets,
        context_fields=context,
        all_rows=parsed.all_rows,
        filter_condition=filt,
        clarification=(parsed.clarification_needed or None),
    )

    if parsed.is_confirmation or looks_like_confirmation(instruction):
        return Intent(category="confirmation", **base)
    if parsed.is_question:
        return Intent(category="question", **base)

    if parsed.is_recalculate:
        assigned = [t for t in targets if t not in recalc]
        if assigned:
            # an assignment plus "and recalculate": the assignment wins
            base["target_fields"] = assigned
            return Intent(category="modification", **base)
        base["target_fields"] = []
        return Intent(category="recalculate", recalculate_fields=recalc, **base)

    if parsed.is_ambiguous and not targets:
        base["clarification"] = base["clarification"] or DEFAULT_CLARIFICATION
        return Intent(category="ambiguous", **base)
    return Intent(category="modification", **base)


class IntentClassifier:
    """
    Single round-trip to the fast structured model. Malformed or unavailable
    output yields `fallback_intent`; configuration errors propagate.
    """

    def __init__(self, model: Optional[Any] = None, *, history_max_turns: int = 12):
        self._model = model if model is not None else ModelFactory.get("intent")
        self._history_max_turns = history_max_turns

    def classify(
        self,
        instruction: str,
        schema: FieldSchema,
        history: Sequence[DialogueTurn] = (),
        *,
        correlation_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> Intent:
        text = (instruction or "").strip()
        if not text:
            return Intent(
                target_fields=[],
                context_fields=[],
                category="ambiguous",
                clarification=DEFAULT_CLARIFICATION,
            )

        prompt = build_intent_prompt(text, schema, trim_history(history, self._history_max_turns))
        try:
            call = self._model(prompt, IntentSchema, temperature=0.0, max_tokens=400)
        except (StructuredOutputError, InferenceUnavailableError) as e:
            intent = fallback_intent(schema, text)
            app_logger.log_engine_event(
                "INTENT_FALLBACK",
                {"reason": type(e).__name__, "detail": str(e)[:300], "category": intent.category},
                correlation_id=correlation_id,
                scope=scope,
            )
            return intent

        intent = resolve_intent(call["parsed"], schema, text)
        intent.tokens = call.get("tokens", {"in": 0, "out": 0})
        intent.model = call.get("model", "unknown")
        app_logger.log_engine_event(
            "INTENT_PARSED",
            {
                "category": intent.category,
                "target_fields": intent.target_fields,
                "context_fields": intent.context_fields,
                "recalculate_fields": intent.recalculate_fields,
                "filter": intent.filter_condition.model_dump() if intent.filter_condition else None,
                "model": intent.model,
            },
            correlation_id=correlation_id,
            scope=scope,
        )
        return intent
