"""
tests/unit/test_context_scoper.py

Scoping decides what the generator sees. Modifications see exactly
target ∪ context fields (everything when that union is empty); questions and
confirmations always see the full schema.
"""

from patch_engine.context_scoper import (
    fields_to_include,
    project_records,
    render_history,
    scope_for,
    trim_history,
)
from patch_engine.intent_model import Intent
from patch_engine.records import DialogueTurn


def _intent(category="modification", targets=(), context=()):
    return Intent(target_fields=list(targets), context_fields=list(context), category=category)


def test_modification_sees_only_target_and_context(records, sku_schema):
    scoped = scope_for(_intent(targets=["color"], context=["size"]), records, sku_schema)
    assert scoped.fields == ["color", "size"]
    assert scoped.full is False
    assert scoped.schema.keys() == ["color", "size"]
    for rec in scoped.records:
        assert set(rec["data"]) == {"color", "size"}


def test_empty_union_means_all_fields(records, sku_schema):
    intent = _intent(targets=[], context=[])
    assert fields_to_include(intent, sku_schema) == sku_schema.keys()
    scoped = scope_for(intent, records, sku_schema)
    assert scoped.full is True


def test_questions_and_confirmations_get_full_context(records, sku_schema):
    for category in ("question", "confirmation"):
        scoped = scope_for(_intent(category=category, targets=["color"]), records, sku_schema)
        assert scoped.full is True
        assert scoped.fields == sku_schema.keys()


def test_projection_fills_missing_keys_with_none(records):
    rows = project_records(records[:1], ["color", "weight"])
    assert rows == [{"id": "r1", "data": {"color": "Red", "weight": None}}]


def test_history_trim_and_render():
    history = [DialogueTurn(role="user", content=f"u{i}") for i in range(5)]
    trimmed = trim_history(history, 2)
    assert [t.content for t in trimmed] == ["u3", "u4"]
    assert trim_history(history, 0) == []
    text = render_history([DialogueTurn(role="user", content="hi"), DialogueTurn(role="assistant", content="hello")])
    assert text == "## Previous Conversation\nUser: hi\nAssistant: hello\n"
    assert render_history([]) == ""
