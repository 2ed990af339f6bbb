"""
tests/unit/test_recalculation_filters.py

Filter evaluation for recalculate turns: case-insensitive, trimmed, with
unknown operators treated as equality.
"""

import pytest

from patch_engine.records import FilterCondition
from patch_engine.recalculation import matches, matching_ids, normalize_operator, recalculate_summary


@pytest.mark.parametrize(
    "op, expected",
    [
        ("equals", "equals"),
        ("startsWith", "startsWith"),
        ("STARTSWITH", "startsWith"),
        ("ends_with", "endsWith"),
        ("includes", "contains"),
        ("greaterThan", "equals"),
        (None, "equals"),
    ],
)
def test_normalize_operator(op, expected):
    assert normalize_operator(op) == expected


def test_matches_is_case_insensitive_and_trimmed():
    assert matches("  NAVY ", FilterCondition(field="color", value="navy"))
    assert matches("Navy Blue", FilterCondition(field="color", operator="contains", value="BLUE"))
    assert matches("RUN-RED-42", FilterCondition(field="sku", operator="startsWith", value="run"))
    assert matches("RUN-RED-42", FilterCondition(field="sku", operator="endsWith", value="-42"))
    assert not matches(None, FilterCondition(field="color", value="navy"))


def test_numbers_compare_as_text(records):
    cond = FilterCondition(field="size", operator="equals", value="42")
    assert matching_ids(records, cond) == ["r1", "r3"]


def test_matching_ids_on_absent_field(records):
    assert matching_ids(records, FilterCondition(field="weight", value="1")) == []


def test_recalculate_summary():
    assert recalculate_summary(["sku"], ["r1", "r3"]) == "Recalculating sku for 2 matching items"
    assert recalculate_summary([], None) == "Recalculating all computed fields"
