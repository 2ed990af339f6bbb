"""
tests/unit/test_patch_validator.py

What this tests (and why)
-------------------------
Nothing reaches the caller as a change unless every key is in the FULL
schema and every id is in the working set. Drops are recorded in the report
(and logged), never raised. Values equal to the current one are pruned and
`previous` always mirrors the pre-patch record.
"""

import json

from patch_engine.patch_validator import log_drops, validate_patches


def test_unknown_fields_are_dropped_not_raised(records, sku_schema):
    report = validate_patches(
        [{"id": "r1", "updates": {"colour": "Blue", "COLOR": "Blue"}}],
        sku_schema,
        records,
    )
    assert [p.id for p in report.patches] == ["r1"]
    assert report.patches[0].updates == {"color": "Blue"}
    assert report.unknown_fields == {"r1": ["colour"]}


def test_unknown_ids_are_dropped(records, sku_schema):
    report = validate_patches([{"id": "r9", "updates": {"color": "Blue"}}], sku_schema, records)
    assert report.patches == []
    assert report.unknown_ids == ["r9"]


def test_unchanged_values_are_pruned(records, sku_schema):
    report = validate_patches(
        [
            {"id": "r1", "updates": {"color": "Navy"}},
            {"id": "r2", "updates": {"color": "Navy"}},
            {"id": "r3", "updates": {"color": "Navy", "size": "42"}},
        ],
        sku_schema,
        records,
    )
    assert [p.id for p in report.patches] == ["r1", "r3"]
    assert report.patches[1].updates == {"color": "Navy"}
    assert report.unchanged == {"r2": ["color"], "r3": ["size"]}


def test_previous_captures_current_values_and_types_are_coerced(records, sku_schema):
    report = validate_patches([{"id": "r2", "updates": {"size": "44"}}], sku_schema, records)
    patch = report.patches[0]
    assert patch.updates == {"size": 44}
    assert patch.previous == {"size": 40}


def test_numeric_text_that_cannot_be_coerced_is_reported(records, sku_schema):
    report = validate_patches([{"id": "r1", "updates": {"size": "XL"}}], sku_schema, records)
    assert report.patches[0].updates == {"size": "XL"}
    assert report.uncoerced == {"r1": ["size"]}


def test_non_finite_numbers_are_reported_as_uncoerced(records, sku_schema):
    report = validate_patches([{"id": "r1", "updates": {"size": "NaN"}}], sku_schema, records)
    assert report.patches[0].updates == {"size": "NaN"}
    assert report.uncoerced == {"r1": ["size"]}


def test_duplicate_ids_merge_last_value_wins(records, sku_schema):
    report = validate_patches(
        [
            {"id": "r1", "updates": {"color": "Blue"}},
            {"id": "r1", "updates": {"color": "Green", "season": "winter"}},
        ],
        sku_schema,
        records,
    )
    assert len(report.patches) == 1
    assert report.patches[0].updates == {"color": "Green", "season": "winter"}


def test_prune_can_be_disabled(records, sku_schema):
    report = validate_patches(
        [{"id": "r2", "updates": {"color": "Navy"}}], sku_schema, records, prune_unchanged=False
    )
    assert report.patches[0].updates == {"color": "Navy"}


def test_log_drops_writes_one_event(records, sku_schema, log_path):
    report = validate_patches([{"id": "r1", "updates": {"brand": "x"}}], sku_schema, records)
    log_drops(report, correlation_id="cid-1", scope="order-1")
    lines = [json.loads(l) for l in log_path.read_text(encoding="utf-8").splitlines()]
    events = [l for l in lines if l.get("event") == "Engine.PATCHES_DROPPED"]
    assert len(events) == 1
    assert events[0]["cid"] == "cid-1"
    assert events[0]["payload"]["unknown_fields"] == {"r1": ["brand"]}


def test_log_drops_is_silent_when_nothing_dropped(records, sku_schema, log_path):
    report = validate_patches([{"id": "r1", "updates": {"color": "Blue"}}], sku_schema, records)
    log_drops(report)
    assert not log_path.exists() or "PATCHES_DROPPED" not in log_path.read_text(encoding="utf-8")
