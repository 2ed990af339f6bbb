"""
Project: Order Intake Assistant
File: config.py

Runtime configuration for the patch engine, read from the environment
(after loading a local .env once).

Methods & Classes
- _to_bool(val, default) -> bool
- _to_int(val, default) -> int
- class EngineSettings (frozen dataclass)
  - from_env() -> EngineSettings
  - model_for(role) -> str
- get_settings() -> EngineSettings (cached)

Dependencies
- External: python-dotenv
- Stdlib: os, dataclasses, functools
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

import dotenv

dotenv.load_dotenv()

ModelRole = Literal["intent", "patch", "question"]

DEFAULT_INTENT_MODEL = "gpt-4o-mini"
DEFAULT_PATCH_MODEL = "gpt-4o"


def _to_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_int(val: str | None, default: int) -> int:
    if val is None or not str(val).strip():
        return default
    try:
        return int(float(str(val).strip()))
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineSettings:
    openai_api_key: str | None
    intent_model: str = DEFAULT_INTENT_MODEL
    patch_model: str = DEFAULT_PATCH_MODEL
    question_model: str = DEFAULT_INTENT_MODEL
    inference_timeout_s: int = 30
    inference_max_retries: int = 2
    session_ttl_s: int = 1800
    history_max_turns: int = 12
    allow_questions_default: bool = False

    @classmethod
    def from_env(cls) -> "EngineSettings":
        intent_model = os.getenv("INTENT_MODEL", DEFAULT_INTENT_MODEL).strip() or DEFAULT_INTENT_MODEL
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            intent_model=intent_model,
            patch_model=os.getenv("PATCH_MODEL", DEFAULT_PATCH_MODEL).strip() or DEFAULT_PATCH_MODEL,
            # question answering ran on the fast model unless overridden
            question_model=os.getenv("QUESTION_MODEL", "").strip() or intent_model,
            inference_timeout_s=_to_int(os.getenv("INFERENCE_TIMEOUT_S"), 30),
            inference_max_retries=_to_int(os.getenv("INFERENCE_MAX_RETRIES"), 2),
            session_ttl_s=_to_int(os.getenv("PATCH_SESSION_TTL_S"), 1800),
            history_max_turns=_to_int(os.getenv("HISTORY_MAX_TURNS"), 12),
            allow_questions_default=_to_bool(os.getenv("ALLOW_QUESTIONS_DEFAULT"), default=False),
        )

    def model_for(self, role: ModelRole) -> str:
        """Model name backing an inference role."""
        if role == "intent":
            return self.intent_model
        if role == "patch":
            return self.patch_model
        if role == "question":
            return self.question_model
        raise ValueError(f"Unknown model role: {role!r}")


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings.from_env()
