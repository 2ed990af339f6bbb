# patch_engine/app_logger.py
"""
One JSON object per line for everything the engine does.

Every line carries the same top-level keys so downstream tooling can rely on
them: ts, lvl, event, cid (one id per turn or undo), scope (working-set id),
msg. `payload`, `status` and `category` appear only when set.

The file is opened lazily on first use. LOG_DIR, LOG_FILE and LOG_LEVEL
override the arguments to `configure`; `reset` closes the file so the next
call picks up new values (tests point LOG_DIR at a temp dir).
"""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER_NAME = "patch_engine"
DEFAULT_LOG_FILE = "patch_engine.jsonl"

# (line key, LogRecord attribute)
_ALWAYS = (("event", "event"), ("cid", "correlation_id"), ("scope", "scope"))
_WHEN_SET = ("status", "category")

_setup_lock = threading.Lock()
_logger: Optional[logging.Logger] = None


class EngineLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "lvl": record.levelname,
        }
        for key, attr in _ALWAYS:
            line[key] = getattr(record, attr, None)
        line["msg"] = record.getMessage() or None
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            line["payload"] = payload
        line.update({k: getattr(record, k) for k in _WHEN_SET if getattr(record, k, None) is not None})
        # datetimes, enums and paths in payloads are written as text
        return json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str)


def _resolve_level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure(
    *,
    root_dir: Union[str, Path] = "logs",
    filename: str = DEFAULT_LOG_FILE,
    level: Union[str, int, None] = None,
) -> logging.Logger:
    """Open the engine log file once; later calls return the same logger."""
    global _logger
    with _setup_lock:
        if _logger is not None:
            return _logger

        path = Path(os.getenv("LOG_DIR") or root_dir) / (os.getenv("LOG_FILE") or filename)
        path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(EngineLineFormatter())

        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(_resolve_level(level))
        logger.propagate = False
        logger.addHandler(handler)
        _logger = logger
        return logger


def reset() -> None:
    global _logger
    with _setup_lock:
        logger = logging.getLogger(LOGGER_NAME)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        _logger = None


def get() -> logging.Logger:
    return _logger if _logger is not None else configure()


# ------------------------- Convenience entry points -------------------------

def log_event(
    event: str,
    payload: Dict[str, Any],
    *,
    correlation_id: Optional[str] = None,
    scope: Optional[str] = None,
    level: int = logging.INFO,
    status: Optional[str] = None,
    category: Optional[str] = None,
) -> None:
    """
    Generic structured event logger.
    Writes one JSON line with minimal stable keys + your payload.
    """
    get().log(
        level,
        event,
        extra={
            "event": event,
            "payload": payload,
            "correlation_id": correlation_id,
            "scope": scope,
            "status": status,
            "category": category,
        },
    )


def log_engine_event(
    event: str,
    payload: Dict[str, Any],
    *,
    correlation_id: Optional[str] = None,
    scope: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Namespaced helper for engine-internal events, e.g. 'Engine.INTENT_PARSED'.
    """
    log_event(f"Engine.{event}", payload, correlation_id=correlation_id, scope=scope, level=level)


def log_turn_result(result: Dict[str, Any], *, scope: Optional[str] = None) -> None:
    """
    Log a finished TurnResult exactly once. Patches are summarized by count
    and touched fields so large working sets don't bloat the log.
    """
    patches = result.get("patches") or []
    fields = sorted({k for p in patches for k in (p.get("updates") or {})})
    payload = {
        "instruction": result.get("instruction"),
        "summary": result.get("summary"),
        "session_id": result.get("session_id"),
        "patch_count": len(patches),
        "fields": fields,
        "matching_ids": result.get("matching_ids"),
        "recalculate_fields": result.get("recalculate_fields"),
        "trigger_regeneration": result.get("trigger_regeneration"),
    }
    log_event(
        "TURN",
        payload,
        correlation_id=result.get("correlation_id"),
        scope=scope,
        status=result.get("status"),
        category=result.get("category"),
    )


def log_error_event(
    event: str,
    error_obj: Dict[str, Any],
    *,
    correlation_id: Optional[str] = None,
    scope: Optional[str] = None,
) -> None:
    """
    Error-line helper that mirrors the error_handler envelope.
    """
    log_event(
        event,
        error_obj,
        correlation_id=correlation_id or error_obj.get("correlation_id"),
        scope=scope,
        level=logging.ERROR,
    )
