"""
tests/unit/test_models_backend.py

Inference wiring without the network:
- StructuredModel returns one stable shape whether the backend hands back a
  pydantic instance, a dict, or JSON text.
- Backend errors become InferenceUnavailableError tagged with the role;
  schema mismatches become StructuredOutputError carrying the raw text.
- ChatModel reads token usage from LangChain response metadata.
- ModelFactory refuses to build a role without credentials.
"""

import httpx
import openai
import pytest

from patch_engine.config import EngineSettings, get_settings
from patch_engine.error_handler import (
    EngineConfigError,
    ErrorOrigin,
    InferenceUnavailableError,
    StructuredOutputError,
)
from patch_engine.models import ChatModel, FieldUpdate, IntentSchema, ModelFactory, StructuredModel

from conftest import FakeChatLLM, ScriptedBackend


def _timeout():
    return openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/responses"))


@pytest.mark.parametrize(
    "reply",
    [
        FieldUpdate(field="color", value="Navy"),
        {"field": "color", "value": "Navy"},
        '{"field": "color", "value": "Navy"}',
    ],
)
def test_structured_call_shape(reply):
    model = StructuredModel(None, "m-1", fn=ScriptedBackend([reply]))
    out = model("prompt", FieldUpdate)
    assert set(out) == {"parsed", "raw", "tokens", "model"}
    assert out["parsed"] == FieldUpdate(field="color", value="Navy")
    assert out["tokens"] == {"in": 0, "out": 0}
    assert out["model"] == "m-1"


def test_backend_error_maps_to_unavailable_with_role_origin():
    model = StructuredModel(None, "m-1", role="patch", fn=ScriptedBackend([_timeout()]))
    with pytest.raises(InferenceUnavailableError) as exc:
        model("prompt", FieldUpdate)
    assert exc.value.origin == ErrorOrigin.GENERATOR
    assert exc.value.details == {"model": "m-1", "role": "patch"}


def test_extra_keys_are_rejected():
    model = StructuredModel(None, "m-1", fn=ScriptedBackend([{"field": "a", "value": "b", "extra": 1}]))
    with pytest.raises(StructuredOutputError) as exc:
        model("prompt", FieldUpdate)
    assert '"extra"' in exc.value.raw


def test_intent_schema_requires_every_key():
    model = StructuredModel(None, "m-1", fn=ScriptedBackend([{"target_fields": []}]))
    with pytest.raises(StructuredOutputError):
        model("prompt", IntentSchema)


def test_chat_model_reads_usage():
    chat = ChatModel("q-1", llm=FakeChatLLM(["  Three items are Navy. "]))
    out = chat([{"role": "user", "content": "how many are navy?"}])
    assert out == {"text": "Three items are Navy.", "tokens": {"in": 11, "out": 7}, "model": "q-1"}


def test_chat_model_backend_error():
    chat = ChatModel("q-1", llm=FakeChatLLM([_timeout()]))
    with pytest.raises(InferenceUnavailableError) as exc:
        chat([])
    assert exc.value.origin == ErrorOrigin.QUESTION


def test_factory_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    ModelFactory.get.cache_clear()
    with pytest.raises(EngineConfigError):
        ModelFactory.get("intent")


def test_settings_model_roles(monkeypatch):
    monkeypatch.setenv("INTENT_MODEL", "fast-1")
    monkeypatch.delenv("QUESTION_MODEL", raising=False)
    monkeypatch.setenv("PATCH_SESSION_TTL_S", "90")
    monkeypatch.setenv("ALLOW_QUESTIONS_DEFAULT", "yes")
    s = EngineSettings.from_env()
    assert s.model_for("intent") == "fast-1"
    assert s.model_for("question") == "fast-1"
    assert s.session_ttl_s == 90
    assert s.allow_questions_default is True
    with pytest.raises(ValueError):
        s.model_for("vision")
