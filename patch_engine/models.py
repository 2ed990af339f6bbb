"""
Project: Order Intake Assistant
File: models.py

Inference wiring for the patch engine: one ModelFactory keyed by role, the
Outlines-backed StructuredModel used by the intent and patch roles, the
LangChain chat wrapper used by the question role, and the strict (LLM-facing)
pydantic schemas those calls are constrained to.

Methods & Classes
- TokenDict
- class StructuredModel: __call__(prompt, output_type, **kwargs) -> {"parsed","raw","tokens","model"}
- class ChatModel: __call__(messages, **kwargs) -> {"text","tokens","model"}
- class ModelFactory: get(role) -> StructuredModel | ChatModel (cached per role)
- Strict schemas:
  - FilterConditionSchema, IntentSchema
  - FieldUpdate, PatchItem, PatchCandidateSchema

Dependencies
- External: outlines, openai, pydantic, langchain-openai, langchain-core
- Internal: config.get_settings, error_handler (typed errors)
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Union

import openai
import outlines
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patch_engine.config import ModelRole, get_settings
from patch_engine.error_handler import (
    EngineConfigError,
    ErrorOrigin,
    InferenceUnavailableError,
    StructuredOutputError,
)

TokenDict = Dict[str, int]  # must contain keys "in" and "out"

# openai raises these for network trouble, timeouts, rate limits and 5xx
_BACKEND_ERRORS = (openai.APIError,)


def _origin_for(role: Optional[str]) -> ErrorOrigin:
    if role == "intent":
        return ErrorOrigin.INTENT
    if role == "patch":
        return ErrorOrigin.GENERATOR
    if role == "question":
        return ErrorOrigin.QUESTION
    return ErrorOrigin.UNKNOWN


def _unavailable(exc: BaseException, *, model: str, role: Optional[str]) -> InferenceUnavailableError:
    err = InferenceUnavailableError(
        f"{type(exc).__name__}: {exc}",
        details={"model": model, "role": role},
    )
    err.origin = _origin_for(role)
    return err


class StructuredModel:
    """
    Unified entry point for Outlines+OpenAI structured calls.

    Call signature:
        __call__(prompt: str, output_type: type[BaseModel], **kwargs) -> dict

    Return shape (always the same):
        {
          "parsed": <Pydantic instance of output_type>,
          "raw": <str>,
          "tokens": {"in": int, "out": int},
          "model": <str>,
        }

    Raises InferenceUnavailableError when the backend fails and
    StructuredOutputError when it answers with something that does not
    validate against `output_type`.
    """

    def __init__(
        self,
        client: Optional[openai.OpenAI],
        model_name: str,
        *,
        role: Optional[ModelRole] = None,
        fn: Optional[Callable[..., Any]] = None,
    ):
        self._client = client
        self._model_name = model_name
        self._role = role
        self._fn = fn if fn is not None else outlines.from_openai(client, model_name)

    @property
    def model_name(self) -> str:
        return self._model_name

    def __call__(self, prompt: str, output_type: type[BaseModel], **kwargs) -> dict:
        try:
            resp = self._fn(prompt, output_type, **kwargs)
        except _BACKEND_ERRORS as e:
            raise _unavailable(e, model=self._model_name, role=self._role) from e

        if isinstance(resp, BaseModel):
            parsed = resp
            raw_text = parsed.model_dump_json(exclude_none=False)
        else:
            raw_text = resp if isinstance(resp, str) else json.dumps(resp, default=str)
            try:
                if isinstance(resp, str):
                    parsed = output_type.model_validate_json(resp)
                else:
                    parsed = output_type.model_validate(resp)
            except (ValidationError, ValueError) as e:
                raise StructuredOutputError(
                    f"{output_type.__name__} did not validate: {e}",
                    raw=raw_text,
                    details={"model": self._model_name, "role": self._role},
                ) from e

        tokens = {"in": 0, "out": 0}
        return {"parsed": parsed, "raw": raw_text, "tokens": tokens, "model": self._model_name}


class ChatModel:
    """
    LangChain ChatOpenAI wrapper for free-text answers.

    __call__(messages) -> {"text": str, "tokens": {"in","out"}, "model": str}
    """

    def __init__(
        self,
        model_name: str,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        temperature: float = 0.0,
        llm: Optional[Any] = None,
    ):
        self._model_name = model_name
        self._llm = llm if llm is not None else ChatOpenAI(
            model=model_name,
            temperature=temperature,
            timeout=timeout,
            max_retries=max_retries,
            **({"api_key": api_key} if api_key else {}),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    def __call__(self, messages: Sequence[Union[BaseMessage, Dict[str, str]]], **kwargs) -> Dict[str, Any]:
        try:
            ai_msg = self._llm.invoke(list(messages), **kwargs)
        except _BACKEND_ERRORS as e:
            raise _unavailable(e, model=self._model_name, role="question") from e

        meta = getattr(ai_msg, "response_metadata", {}) or {}
        usage = meta.get("token_usage", {}) or {}
        tokens = {
            "in": int(usage.get("prompt_tokens", usage.get("input_tokens", 0)) or 0),
            "out": int(usage.get("completion_tokens", usage.get("output_tokens", 0)) or 0),
        }
        content = ai_msg.content if isinstance(ai_msg.content, str) else str(ai_msg.content)
        return {"text": content.strip(), "tokens": tokens, "model": self._model_name}


class ModelFactory:
    """
    One backend per role. The intent and patch roles are structured (Outlines);
    the question role is a chat model. Which model backs a role is read from
    EngineSettings and nowhere else.
    """

    @staticmethod
    @lru_cache(maxsize=None)
    def get(role: ModelRole = "intent") -> Union[StructuredModel, ChatModel]:
        settings = get_settings()
        if not settings.openai_api_key:
            raise EngineConfigError("OPENAI_API_KEY is not set", details={"role": role})
        model_name = settings.model_for(role)
        if role == "question":
            return ChatModel(
                model_name,
                api_key=settings.openai_api_key,
                timeout=settings.inference_timeout_s,
                max_retries=settings.inference_max_retries,
            )
        client = openai.OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.inference_timeout_s,
            max_retries=settings.inference_max_retries,
        )
        return StructuredModel(client, model_name, role=role)


# ---------- Strict schemas (LLM-facing) ----------
FilterOperator = Literal["equals", "contains", "startsWith", "endsWith"]


class FilterConditionSchema(BaseModel):
    field: str = Field(...)
    operator: FilterOperator = Field(...)
    value: str = Field(...)
    model_config = ConfigDict(extra="forbid")


class IntentSchema(BaseModel):
    target_fields: List[str] = Field(...)
    context_fields: List[str] = Field(...)
    all_rows: bool = Field(...)
    is_ambiguous: bool = Field(...)
    is_question: bool = Field(...)
    is_confirmation: bool = Field(...)
    is_recalculate: bool = Field(...)
    recalculate_fields: List[str] = Field(...)
    filter_condition: Optional[FilterConditionSchema] = Field(...)
    clarification_needed: Optional[str] = Field(...)
    model_config = ConfigDict(extra="forbid")


class FieldUpdate(BaseModel):
    field: str = Field(...)
    value: str = Field(...)
    model_config = ConfigDict(extra="forbid")


class PatchItem(BaseModel):
    id: str = Field(...)
    updates: List[FieldUpdate] = Field(...)
    model_config = ConfigDict(extra="forbid")


class PatchCandidateSchema(BaseModel):
    status: Literal["success", "ambiguous", "no_changes"] = Field(...)
    patches: List[PatchItem] = Field(...)
    trigger_regeneration: bool = Field(...)
    summary: str = Field(...)
    clarification_needed: Optional[str] = Field(...)
    model_config = ConfigDict(extra="forbid")
