# patch_engine/error_handler.py
"""
Typed exceptions and a unified, actionable error envelope for the patch engine.

Exceptions
----------
Every failure the engine lets escape is a `PatchEngineError` subclass carrying
a stable `code`. Callers catch the base class and render `error_from_exception`.

    PatchEngineError
    ├── EngineConfigError          CONFIG_MISSING          fatal, raised before any inference call
    ├── InferenceUnavailableError  INFERENCE_UNAVAILABLE   backend down / timeout; retry the turn
    ├── StructuredOutputError      STRUCTURED_OUTPUT_INVALID
    │   └── GenerationParseError   GENERATION_PARSE_FAILURE  generator output unusable; never defaulted
    ├── SessionNotFound            SESSION_NOT_FOUND
    ├── SessionAlreadyUndone       SESSION_ALREADY_UNDONE
    └── PersistenceError           IO_PERSISTENCE_FAILURE  store write failed; session state unchanged

Error object contract (MUST NOT BREAK):
---------------------------------------
{
  "code": <ENUM>,              # stable, app-specific
  "origin": <str>,             # "intent" | "generator" | "question" | "validator" | "ledger" | "config" | "io" | "unknown"
  "retryable": <bool>,         # can the user simply try again?
  "user_message": <str>,       # short, clear, user-safe message (rendered verbatim)
  "next_actions": <list[str]>, # 1–3 verbs the UI maps to quick replies
  "dev_message": <str|None>,   # terse technical reason, safe to log (not shown to users)
  "details": <dict>,           # diagnostics (exception type, model, session id…)
  "context": <dict>,           # e.g., {"scope": "order-17"}
  "timestamp": <iso-utc>,      # when the error was produced
  "correlation_id": <str>      # ties together logs for this turn
}

Usage
-----
    try:
        result = engine.handle_turn(request)
    except PatchEngineError as exc:
        err = error_from_exception(exc, correlation_id=cid)
        show(err["user_message"])
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union


# ----------------------------- Enums & constants -----------------------------

class ErrorCode(str, Enum):
    CONFIG_MISSING = "CONFIG_MISSING"
    INFERENCE_UNAVAILABLE = "INFERENCE_UNAVAILABLE"
    STRUCTURED_OUTPUT_INVALID = "STRUCTURED_OUTPUT_INVALID"
    GENERATION_PARSE_FAILURE = "GENERATION_PARSE_FAILURE"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_ALREADY_UNDONE = "SESSION_ALREADY_UNDONE"
    IO_PERSISTENCE_FAILURE = "IO_PERSISTENCE_FAILURE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorOrigin(str, Enum):
    INTENT = "intent"
    GENERATOR = "generator"
    QUESTION = "question"
    VALIDATOR = "validator"
    LEDGER = "ledger"
    CONFIG = "config"
    IO = "io"
    UNKNOWN = "unknown"


class NextAction(str, Enum):
    TRY_REPHRASE = "TRY_REPHRASE"
    RETRY_LATER = "RETRY_LATER"
    NARROW_SELECTION = "NARROW_SELECTION"
    ENABLE_QUESTIONS = "ENABLE_QUESTIONS"
    REFRESH_GRID = "REFRESH_GRID"
    CONTACT_ADMIN = "CONTACT_ADMIN"


_DEFAULT_USER_MESSAGES: Mapping[ErrorCode, str] = {
    ErrorCode.CONFIG_MISSING: "The assistant is not configured. Ask an administrator to set the inference credentials.",
    ErrorCode.INFERENCE_UNAVAILABLE: "The assistant didn’t respond in time. Nothing was changed; try again.",
    ErrorCode.STRUCTURED_OUTPUT_INVALID: "I got an unreadable answer back. Nothing was changed; try again.",
    ErrorCode.GENERATION_PARSE_FAILURE: "I couldn’t turn that into safe edits. Nothing was changed; try rephrasing or selecting fewer rows.",
    ErrorCode.SESSION_NOT_FOUND: "There is nothing to undo for that change. It may have expired.",
    ErrorCode.SESSION_ALREADY_UNDONE: "That change was already undone.",
    ErrorCode.IO_PERSISTENCE_FAILURE: "The records couldn’t be saved. Refresh the grid before continuing.",
    ErrorCode.UNKNOWN_ERROR: "Something went wrong. Nothing was changed; try rephrasing.",
}

_DEFAULT_ACTIONS: Mapping[ErrorCode, Tuple[NextAction, ...]] = {
    ErrorCode.CONFIG_MISSING: (NextAction.CONTACT_ADMIN,),
    ErrorCode.INFERENCE_UNAVAILABLE: (NextAction.RETRY_LATER, NextAction.TRY_REPHRASE),
    ErrorCode.STRUCTURED_OUTPUT_INVALID: (NextAction.TRY_REPHRASE, NextAction.RETRY_LATER),
    ErrorCode.GENERATION_PARSE_FAILURE: (NextAction.TRY_REPHRASE, NextAction.NARROW_SELECTION),
    ErrorCode.SESSION_NOT_FOUND: (NextAction.REFRESH_GRID,),
    ErrorCode.SESSION_ALREADY_UNDONE: (NextAction.REFRESH_GRID,),
    ErrorCode.IO_PERSISTENCE_FAILURE: (NextAction.REFRESH_GRID, NextAction.RETRY_LATER),
    ErrorCode.UNKNOWN_ERROR: (NextAction.TRY_REPHRASE,),
}


# --------------------------------- Exceptions ---------------------------------

class PatchEngineError(RuntimeError):
    """Base class for every error the engine surfaces to its caller."""
    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    origin: ErrorOrigin = ErrorOrigin.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message or self.code.value)
        self.details: Dict[str, Any] = dict(details or {})


class EngineConfigError(PatchEngineError):
    """Missing or invalid configuration (e.g. no OPENAI_API_KEY)."""
    code = ErrorCode.CONFIG_MISSING
    origin = ErrorOrigin.CONFIG


class InferenceUnavailableError(PatchEngineError):
    """The inference backend failed or timed out; the turn had no side effects."""
    code = ErrorCode.INFERENCE_UNAVAILABLE
    origin = ErrorOrigin.UNKNOWN
    retryable = True


class StructuredOutputError(PatchEngineError):
    """Backend answered, but the payload did not validate against the requested schema."""
    code = ErrorCode.STRUCTURED_OUTPUT_INVALID
    retryable = True

    def __init__(self, message: str = "", *, raw: Optional[str] = None,
                 details: Optional[Mapping[str, Any]] = None):
        super().__init__(message, details=details)
        self.raw = raw


class GenerationParseError(StructuredOutputError):
    """Patch generation returned something that cannot be parsed into patches."""
    code = ErrorCode.GENERATION_PARSE_FAILURE
    origin = ErrorOrigin.GENERATOR


class SessionNotFound(PatchEngineError):
    code = ErrorCode.SESSION_NOT_FOUND
    origin = ErrorOrigin.LEDGER


class SessionAlreadyUndone(PatchEngineError):
    code = ErrorCode.SESSION_ALREADY_UNDONE
    origin = ErrorOrigin.LEDGER


class PersistenceError(PatchEngineError):
    """The record store could not be written. Nothing was recorded or marked undone."""
    code = ErrorCode.IO_PERSISTENCE_FAILURE
    origin = ErrorOrigin.IO
    retryable = True


# ----------------------------- Utility helpers ------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_correlation_id(prefix: str = "turn") -> str:
    """
    Build a correlation id that can be grepped across engine logs and turn logs.
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _ensure_actions(values: Optional[Sequence[Union[str, NextAction]]]) -> List[str]:
    if not values:
        return []
    out: List[str] = []
    for v in values:
        s = v.value if isinstance(v, NextAction) else str(v)
        if s and s not in out:
            out.append(s)
    # keep at most 3 per the UI guidance
    return out[:3]


# ------------------------------- Main factory --------------------------------

def make_error(
    *,
    code: Union[ErrorCode, str],
    origin: Union[ErrorOrigin, str] = ErrorOrigin.UNKNOWN,
    retryable: bool,
    user_message: Optional[str] = None,
    next_actions: Optional[Sequence[Union[str, NextAction]]] = None,
    dev_message: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation_id: Optional[str] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Construct a fully-formed error object (dict) consistent with the contract.

    - `user_message` and `next_actions` default from the `code`.
    - `details` and `context` are pass-through diagnostics; avoid record contents here.
    - `correlation_id`: pass the per-turn id if you have it; else a new id is generated.
    """
    try:
        code_enum = ErrorCode(code)
    except ValueError:
        code_enum = ErrorCode.UNKNOWN_ERROR

    try:
        origin_enum = ErrorOrigin(origin)
    except ValueError:
        origin_enum = ErrorOrigin.UNKNOWN

    msg = (user_message or _DEFAULT_USER_MESSAGES.get(code_enum) or _DEFAULT_USER_MESSAGES[ErrorCode.UNKNOWN_ERROR]).strip()
    actions = _ensure_actions(next_actions) or [a.value for a in _DEFAULT_ACTIONS.get(code_enum, (NextAction.TRY_REPHRASE,))]

    return {
        "code": code_enum.value,
        "origin": origin_enum.value,
        "retryable": bool(retryable),
        "user_message": msg,
        "next_actions": actions,
        "dev_message": (dev_message or None),
        "details": dict(details or {}),
        "context": dict(context or {}),
        "timestamp": now or _now_iso(),
        "correlation_id": correlation_id or new_correlation_id(),
    }


def error_from_exception(
    exc: BaseException,
    *,
    correlation_id: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Map any exception to the envelope. Typed engine errors keep their code,
    origin and retryability; anything else becomes UNKNOWN_ERROR.
    """
    if isinstance(exc, PatchEngineError):
        return make_error(
            code=exc.code,
            origin=exc.origin,
            retryable=exc.retryable,
            dev_message=f"{type(exc).__name__}: {exc}",
            details={"exception": type(exc).__name__, **exc.details},
            context=context,
            correlation_id=correlation_id,
        )
    return make_error(
        code=ErrorCode.UNKNOWN_ERROR,
        origin=ErrorOrigin.UNKNOWN,
        retryable=False,
        dev_message=f"{type(exc).__name__}: {exc}",
        details={"exception": type(exc).__name__},
        context=context,
        correlation_id=correlation_id,
    )


# ------------------------------- Introspection --------------------------------

def summarize_for_log(error_obj: Optional[Mapping[str, Any]]) -> str:
    """
    Produce a compact single-line summary suitable for the turn log.
    """
    if not error_obj:
        return ""
    code = error_obj.get("code", "UNKNOWN")
    origin = error_obj.get("origin", "unknown")
    retryable = error_obj.get("retryable", False)
    cid = error_obj.get("correlation_id", "")
    return f"{code} origin={origin} retryable={retryable} cid={cid}"
