"""
tests/conftest.py

Purpose
-------
Global pytest configuration for the entire test suite.

What this does
--------------
1) Loads `.env` values at session start and sets placeholder defaults
   (OPENAI_API_KEY, model names) so nothing explodes on missing env vars.
   No test talks to the network: every model role is a scripted fake.
2) Redirects the JSONL engine log into a per-test temp dir and resets the
   logger around each test.
3) Clears the cached settings and ModelFactory roles around each test so
   env changes made with monkeypatch are picked up.
4) Provides shared fixtures:
   - `labels_schema` / `sku_schema`: small schemas (plain labels; with a SKU template)
   - `records`: three line items
   - `intent_reply` / `patch_reply`: builders for scripted model answers
   - `make_engine`: PatchEngine over an in-memory store with scripted roles;
     returns a namespace exposing the engine, store and call-counting backends

Fakes
-----
- ScriptedBackend: stands in for the Outlines callable inside the *real*
  StructuredModel, so validation errors flow through production code.
  Replies are consumed in order; an exception instance is raised instead.
- FakeChatLLM: stands in for ChatOpenAI inside the real ChatModel.
"""

import os
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import dotenv
import pytest

dotenv.load_dotenv()
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("INTENT_MODEL", "gpt-4o-mini")
os.environ.setdefault("PATCH_MODEL", "gpt-4o")

from patch_engine import app_logger
from patch_engine.config import EngineSettings, get_settings
from patch_engine.dialogue_engine import PatchEngine
from patch_engine.field_schema import FieldSchema
from patch_engine.models import ChatModel, ModelFactory, StructuredModel
from patch_engine.records import Record
from patch_engine.session_ledger import SessionLedger
from patch_engine.store import InMemoryRecordStore


# ---- fakes -------------------------------------------------------------------

class ScriptedBackend:
    """Outlines-style callable: (prompt, output_type, **kwargs) -> JSON str | dict."""

    def __init__(self, replies=()):
        self.replies: List[Any] = list(replies)
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, prompt, output_type, **kwargs):
        self.calls.append({"prompt": prompt, "output_type": output_type, "kwargs": kwargs})
        if not self.replies:
            raise AssertionError(f"unexpected structured call for {output_type.__name__}")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def count(self) -> int:
        return len(self.calls)


class FakeChatLLM:
    """ChatOpenAI-style object: invoke(messages) -> message with .content."""

    def __init__(self, replies=()):
        self.replies: List[Any] = list(replies)
        self.calls: List[List[Any]] = []

    def invoke(self, messages, **_):
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("unexpected chat call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return SimpleNamespace(
            content=reply,
            response_metadata={"token_usage": {"prompt_tokens": 11, "completion_tokens": 7}},
        )

    @property
    def count(self) -> int:
        return len(self.calls)


# ---- env / logging -----------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_logs_and_caches(monkeypatch, tmp_path):
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("LOG_DIR", str(log_dir))
    monkeypatch.setenv("LOG_FILE", "patch_engine.jsonl")
    app_logger.reset()
    get_settings.cache_clear()
    ModelFactory.get.cache_clear()
    yield
    app_logger.reset()
    get_settings.cache_clear()
    ModelFactory.get.cache_clear()


@pytest.fixture()
def log_path(tmp_path):
    return tmp_path / "logs" / "patch_engine.jsonl"


@pytest.fixture()
def settings():
    return EngineSettings(
        openai_api_key="test-key",
        intent_model="fake-intent",
        patch_model="fake-patch",
        question_model="fake-question",
        session_ttl_s=1800,
        history_max_turns=12,
        allow_questions_default=False,
    )


# ---- data --------------------------------------------------------------------

@pytest.fixture()
def labels_schema():
    return FieldSchema.from_labels({"color": "Color", "sku": "SKU"})


@pytest.fixture()
def sku_schema():
    return FieldSchema.from_profile([
        {"key": "name", "label": "Product Name"},
        {"key": "color", "label": "Color", "catalog_key": "colors"},
        {"key": "size", "label": "Size", "type": "number"},
        {"key": "season", "label": "Season"},
        {"key": "sku", "label": "SKU", "template": "{name}-{color.code}-{size}", "use_template": True},
    ])


@pytest.fixture()
def records():
    return [
        Record(id="r1", data={"name": "Runner", "color": "Red", "size": 42, "season": "summer", "sku": "RUN-RED-42"}),
        Record(id="r2", data={"name": "Trail", "color": "Navy", "size": 40, "season": "summer", "sku": "TRA-NAV-40"}),
        Record(id="r3", data={"name": "Court", "color": "white", "size": 42, "season": "winter", "sku": "COU-WHI-42"}),
    ]


# ---- reply builders ----------------------------------------------------------

def _intent_reply(**overrides) -> Dict[str, Any]:
    base = {
        "target_fields": [],
        "context_fields": [],
        "all_rows": True,
        "is_ambiguous": False,
        "is_question": False,
        "is_confirmation": False,
        "is_recalculate": False,
        "recalculate_fields": [],
        "filter_condition": None,
        "clarification_needed": None,
    }
    base.update(overrides)
    return base


def _patch_reply(
    patches: Optional[Dict[str, Dict[str, Any]]] = None,
    *,
    status: str = "success",
    summary: str = "",
    trigger_regeneration: bool = False,
    clarification_needed: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "status": status,
        "patches": [
            {"id": rid, "updates": [{"field": k, "value": str(v)} for k, v in upd.items()]}
            for rid, upd in (patches or {}).items()
        ],
        "trigger_regeneration": trigger_regeneration,
        "summary": summary,
        "clarification_needed": clarification_needed,
    }


@pytest.fixture()
def intent_reply():
    return _intent_reply


@pytest.fixture()
def patch_reply():
    return _patch_reply


# ---- engine ------------------------------------------------------------------

@pytest.fixture()
def make_engine(settings):
    """
    make_engine(records, schema, intent=[...], patch=[...], chat=[...], **engine_kwargs)
    -> SimpleNamespace(engine, store, ledger, intent, patch, chat, calls())
    """
    def _make(records, schema, *, intent=(), patch=(), chat=(), store=None, ledger=None,
              scope_id="order-1", catalog_guide=None, engine_settings=None):
        intent_backend = ScriptedBackend(intent)
        patch_backend = ScriptedBackend(patch)
        chat_llm = FakeChatLLM(chat)
        store = store if store is not None else InMemoryRecordStore(records)
        ledger = ledger if ledger is not None else SessionLedger(ttl_s=1800)
        engine = PatchEngine(
            store,
            schema,
            scope_id=scope_id,
            ledger=ledger,
            catalog_guide=catalog_guide,
            intent_model=StructuredModel(None, "fake-intent", role="intent", fn=intent_backend),
            patch_model=StructuredModel(None, "fake-patch", role="patch", fn=patch_backend),
            question_model=ChatModel("fake-question", llm=chat_llm),
            settings=engine_settings or settings,
        )
        return SimpleNamespace(
            engine=engine,
            store=store,
            ledger=ledger,
            intent=intent_backend,
            patch=patch_backend,
            chat=chat_llm,
            calls=lambda: intent_backend.count + patch_backend.count + chat_llm.count,
        )

    return _make
