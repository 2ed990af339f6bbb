#!/usr/bin/env python3
"""
Project: Order Intake Assistant
File: question_agent.py

QuestionAgent
-------------
Answers analytical questions about the working set ("how many are Navy?",
"which sizes appear?") in prose. Never mutates anything.

Design:
- Always full context: every field of every record in the selection. The
  scoper is bypassed because the relevant fields of a question are not
  predictable from the question.
- Prior turns are rendered as "User:/Assistant:" lines above the data so
  follow-ups ("and of those?") resolve.
- One chat call (LangChain ChatOpenAI via models.ChatModel).

Public API
- QUESTION_SYSTEM_PROMPT
- build_question_prompt(scoped, instruction, history=()) -> str
- class QuestionAgent:
    - __init__(model=None, *, history_max_turns=12)
    - answer(instruction, scoped, *, history=()) -> dict {"text","tokens","model"}

Dependencies
- External: langchain-core (messages)
- Internal: models.ModelFactory, context_scoper
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from patch_engine.context_scoper import ScopedContext, render_history, trim_history
from patch_engine.models import ModelFactory
from patch_engine.records import DialogueTurn

QUESTION_SYSTEM_PROMPT = (
    "You are a data analyst answering questions about a dataset of order line items.\n"
    "RULES:\n"
    "1) Count carefully; list items if needed to verify.\n"
    "2) For unique values, extract and list all distinct values.\n"
    "3) Answer the current question accurately based only on the data provided.\n"
    "4) If asked about previous questions, refer to the conversation history above the data.\n"
    "5) Do not propose or claim any change to the data.\n"
)


def build_question_prompt(
    scoped: ScopedContext,
    instruction: str,
    history: Sequence[DialogueTurn] = (),
) -> str:
    return (
        f"{render_history(history)}"
        f"## Dataset ({len(scoped.records)} records)\n"
        f"Available fields: {', '.join(scoped.fields)}\n\n"
        f"{json.dumps(scoped.records, ensure_ascii=False, default=str, separators=(',', ':'))}\n\n"
        "## Current Question\n"
        f"{instruction}\n\n"
        "Provide an accurate answer based on the data above."
    )


class QuestionAgent:
    def __init__(self, model: Optional[Any] = None, *, history_max_turns: int = 12):
        self._model = model if model is not None else ModelFactory.get("question")
        self._history_max_turns = history_max_turns

    def answer(
        self,
        instruction: str,
        scoped: ScopedContext,
        *,
        history: Sequence[DialogueTurn] = (),
    ) -> Dict[str, Any]:
        messages = [
            SystemMessage(content=QUESTION_SYSTEM_PROMPT),
            HumanMessage(
                content=build_question_prompt(
                    scoped, instruction, trim_history(history, self._history_max_turns)
                )
            ),
        ]
        out = self._model(messages)
        return {
            "text": (out.get("text") or "").strip(),
            "tokens": out.get("tokens", {"in": 0, "out": 0}),
            "model": out.get("model", "unknown"),
        }
