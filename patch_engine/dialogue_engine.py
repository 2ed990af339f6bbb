"""
patch_engine.dialogue_engine
patch_engine/dialogue_engine.py
===============================

PatchEngine: one conversational turn over a working set of order line items.

The engine takes an instruction, classifies it, routes it, and returns a
`TurnResult`. Only the modification path mutates anything, and only after
the candidate patches have been validated against the full schema.

Routing
-------
1) **Classify** (always, one fast structured call) → `Intent` with a single
   category: modification | question | confirmation | recalculate | ambiguous.

2) **Question routing**: with question mode on, an ambiguous turn or a
   modification naming no field at all is answered as a question instead.
   Confirmations are never questions.

3) **Ambiguous** → `ambiguous` with clarification text. No second call.

4) **Recalculate** → `recalculate` with the fields to regenerate and, for a
   filter condition, the locally computed `matching_ids`. No second call; the
   template recompute is someone else's job.

5) **Question** → without opt-in, `question` asking the caller to enable
   question mode (no second call). With opt-in, one chat call over the full
   selection; `answer` is returned, nothing changes.

6) **Modification / confirmation** → scope (confirmation uses the full
   schema) → generate → validate → apply → record session. Result is
   `success` with the applied patches and a fresh `session_id`, or
   `no_changes`, or `ambiguous` if the generator could not resolve it.

Side-effect ordering
--------------------
validate → store.apply → ledger.record. A turn that fails or is abandoned
before validation finishes has changed nothing and recorded nothing. Undo
runs the other way round: the inverse is written first and the session is
only marked undone once the write succeeded.

Errors that escape `handle_turn`: GenerationParseError and
InferenceUnavailableError from generation/answering; PersistenceError when
the store write fails; EngineConfigError at construction. `undo` raises
SessionNotFound / SessionAlreadyUndone, or PersistenceError with the session
left undoable.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Union

from patch_engine import app_logger
from patch_engine.config import EngineSettings, get_settings
from patch_engine.context_scoper import full_context, scope_for
from patch_engine.error_handler import (
    EngineConfigError,
    PatchEngineError,
    PersistenceError,
    error_from_exception,
    new_correlation_id,
)
from patch_engine.field_schema import FieldSchema
from patch_engine.intent_model import DEFAULT_CLARIFICATION, Intent, IntentClassifier
from patch_engine.patch_generator import PatchGenerator
from patch_engine.patch_validator import log_drops, validate_patches
from patch_engine.question_agent import QuestionAgent
from patch_engine.recalculation import matching_ids, recalculate_summary
from patch_engine.records import Patch, Record, TurnRequest, TurnResult, UndoResult
from patch_engine.session_ledger import SessionLedger
from patch_engine.store import RecordStore

AMBIGUOUS_SUMMARY = "Could not determine which fields to modify"
QUESTION_OPT_IN_SUMMARY = "This looks like a question about your data."
QUESTION_OPT_IN_CLARIFICATION = "Enable question mode to analyze your data and answer questions."
QUESTION_ANSWERED_SUMMARY = "Question answered"
NO_CHANGES_SUMMARY = "No changes needed"


# ----------------------------- Module helpers ---------------------------------

def _route_category(intent: Intent, *, allow_questions: bool) -> str:
    category = intent.category
    if not allow_questions or category == "confirmation":
        return category
    if category == "ambiguous":
        return "question"
    if category == "modification" and not intent.fallback and not intent.target_fields and not intent.context_fields:
        return "question"
    return category


class PatchEngine:
    def __init__(
        self,
        store: RecordStore,
        schema: Union[FieldSchema, Mapping[str, str]],
        *,
        scope_id: str,
        ledger: Optional[SessionLedger] = None,
        catalog_guide: Optional[str] = None,
        intent_model: Optional[Any] = None,
        patch_model: Optional[Any] = None,
        question_model: Optional[Any] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or get_settings()
        if not self.settings.openai_api_key and None in (intent_model, patch_model, question_model):
            raise EngineConfigError("OPENAI_API_KEY is not set", details={"scope": scope_id})

        self.store = store
        self.schema = schema if isinstance(schema, FieldSchema) else FieldSchema.from_labels(schema)
        self.scope_id = str(scope_id)
        self.ledger = ledger if ledger is not None else SessionLedger(ttl_s=self.settings.session_ttl_s)
        self.catalog_guide = catalog_guide

        max_turns = self.settings.history_max_turns
        self.classifier = IntentClassifier(intent_model, history_max_turns=max_turns)
        self.generator = PatchGenerator(patch_model, history_max_turns=max_turns)
        self.question_agent = QuestionAgent(question_model, history_max_turns=max_turns)

    # ------------------------------- Internals --------------------------------

    def _finish(self, result: TurnResult, instruction: str) -> TurnResult:
        payload = result.model_dump(exclude={"items"})
        payload["instruction"] = instruction
        app_logger.log_turn_result(payload, scope=self.scope_id)
        return result

    def _fail(self, exc: PatchEngineError, cid: str, event: str = "TURN_ERROR") -> None:
        # callers rendering the error later reuse the turn's id
        exc.details.setdefault("correlation_id", cid)
        err = error_from_exception(exc, correlation_id=cid, context={"scope": self.scope_id})
        app_logger.log_error_event(event, err, correlation_id=cid, scope=self.scope_id)

    def _write(self, patches: List[Patch]) -> List[Record]:
        try:
            return self.store.apply(patches)
        except OSError as e:
            raise PersistenceError(
                f"store write failed: {e}", details={"patch_count": len(patches), "reason": type(e).__name__}
            ) from e

    def _recalculate(self, intent: Intent, working: List[Record], cid: str) -> TurnResult:
        requested = intent.recalculate_fields
        matching = matching_ids(working, intent.filter_condition) if intent.filter_condition else None
        app_logger.log_engine_event(
            "RECALCULATE",
            {
                "fields": requested or "all_computed",
                "filter": intent.filter_condition.model_dump() if intent.filter_condition else None,
                "matched": None if matching is None else len(matching),
            },
            correlation_id=cid,
            scope=self.scope_id,
        )
        return TurnResult(
            status="recalculate",
            category="recalculate",
            summary=recalculate_summary(requested, matching),
            recalculate_fields=list(requested) or self.schema.computed_fields(),
            filter_condition=intent.filter_condition,
            matching_ids=matching,
            trigger_regeneration=True,
            correlation_id=cid,
        )

    def _answer(self, request: TurnRequest, working: List[Record], cid: str, *, allow_questions: bool) -> TurnResult:
        if not allow_questions:
            return TurnResult(
                status="question",
                category="question",
                summary=QUESTION_OPT_IN_SUMMARY,
                clarification=QUESTION_OPT_IN_CLARIFICATION,
                correlation_id=cid,
            )
        out = self.question_agent.answer(
            request.instruction,
            full_context(working, self.schema),
            history=request.conversation_history,
        )
        return TurnResult(
            status="question",
            category="question",
            summary=QUESTION_ANSWERED_SUMMARY,
            answer=out["text"],
            correlation_id=cid,
        )

    def _modify(self, request: TurnRequest, intent: Intent, working: List[Record], cid: str) -> TurnResult:
        if not working:
            return TurnResult(status="no_changes", category=intent.category, summary=NO_CHANGES_SUMMARY, correlation_id=cid)

        scoped = scope_for(intent, working, self.schema)
        app_logger.log_engine_event(
            "SCOPED",
            {"fields": scoped.fields, "records": len(scoped.records), "full": scoped.full, "category": intent.category},
            correlation_id=cid,
            scope=self.scope_id,
        )

        candidate = self.generator.generate(
            request.instruction,
            scoped,
            history=request.conversation_history,
            catalog_guide=self.catalog_guide,
            correlation_id=cid,
            scope=self.scope_id,
        )

        if candidate.status == "ambiguous":
            return TurnResult(
                status="ambiguous",
                category=intent.category,
                summary=candidate.summary or AMBIGUOUS_SUMMARY,
                clarification=candidate.clarification or intent.clarification or DEFAULT_CLARIFICATION,
                correlation_id=cid,
            )

        # validate against the full schema, not the scoped one
        report = validate_patches(candidate.patches, self.schema, working)
        log_drops(report, correlation_id=cid, scope=self.scope_id)

        if not report.patches:
            summary = candidate.summary if candidate.status == "no_changes" and candidate.summary else NO_CHANGES_SUMMARY
            return TurnResult(status="no_changes", category=intent.category, summary=summary, correlation_id=cid)

        items = self._write(report.patches)
        session = self.ledger.record(self.scope_id, report.patches)
        updated_keys = sorted({k for p in report.patches for k in p.updates})
        app_logger.log_engine_event(
            "SESSION_RECORDED",
            {"session_id": session.session_id, "patch_count": len(report.patches), "fields": updated_keys},
            correlation_id=cid,
            scope=self.scope_id,
        )
        return TurnResult(
            status="success",
            category=intent.category,
            summary=candidate.summary or f"Processed {len(report.patches)} changes",
            patches=report.patches,
            session_id=session.session_id,
            trigger_regeneration=candidate.trigger_regeneration or self.schema.feeds_templates(updated_keys),
            items=items,
            correlation_id=cid,
        )

    # ------------------------------- Main API ---------------------------------

    def handle_turn(self, request: TurnRequest) -> TurnResult:
        cid = new_correlation_id("turn")
        allow_questions = (
            request.allow_questions
            if request.allow_questions is not None
            else self.settings.allow_questions_default
        )
        working = self.store.fetch(request.record_ids)

        try:
            intent = self.classifier.classify(
                request.instruction,
                self.schema,
                request.conversation_history,
                correlation_id=cid,
                scope=self.scope_id,
            )
            category = _route_category(intent, allow_questions=allow_questions)

            if category == "ambiguous":
                result = TurnResult(
                    status="ambiguous",
                    category="ambiguous",
                    summary=AMBIGUOUS_SUMMARY,
                    clarification=intent.clarification or DEFAULT_CLARIFICATION,
                    correlation_id=cid,
                )
            elif category == "recalculate":
                result = self._recalculate(intent, working, cid)
            elif category == "question":
                result = self._answer(request, working, cid, allow_questions=allow_questions)
            else:
                result = self._modify(request, intent, working, cid)
        except PatchEngineError as e:
            self._fail(e, cid)
            raise

        return self._finish(result, request.instruction)

    def undo(self, session_id: str) -> UndoResult:
        """
        Replay a session's pre-images through the store. No inference call.
        Raises SessionNotFound (unknown, expired, or another scope's id),
        SessionAlreadyUndone, or PersistenceError. A failed write leaves the
        session undoable.
        """
        cid = new_correlation_id("undo")
        items: List[Record] = []
        try:
            inverse = self.ledger.undo(
                session_id,
                scope_id=self.scope_id,
                apply=lambda patches: items.extend(self._write(patches)),
            )
        except PatchEngineError as e:
            self._fail(e, cid, event="UNDO_ERROR")
            raise

        result = UndoResult(
            session_id=session_id,
            reverted_count=len(inverse),
            items=items,
            summary=f"Reverted {len(inverse)} changes",
        )
        app_logger.log_engine_event(
            "SESSION_UNDONE",
            {"session_id": session_id, "reverted_count": result.reverted_count},
            correlation_id=cid,
            scope=self.scope_id,
        )
        app_logger.log_event(
            "UNDO",
            {"session_id": session_id, "summary": result.summary, "reverted_count": result.reverted_count},
            correlation_id=cid,
            scope=self.scope_id,
        )
        return result
