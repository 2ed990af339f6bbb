"""
tests/unit/test_field_schema.py

What this tests (and why)
-------------------------
FieldSchema is the ground truth every other component checks keys against.
- Case-insensitive canonicalization, unknown keys dropped, order kept.
- Template metadata: computed fields, placeholder dependencies, and the
  `feeds_templates` advisory used for trigger_regeneration.
- Type coercion of generated (string) values.
- Profile construction honors `use_template` and `name` aliases.
"""

import pytest

from patch_engine.field_schema import FieldDef, FieldSchema


def test_canonical_key_is_case_insensitive(sku_schema):
    assert sku_schema.canonical_key("SKU") == "sku"
    assert sku_schema.canonical_key(" Color ") == "color"
    assert sku_schema.canonical_key("brand") is None
    assert sku_schema.canonical_key(None) is None


def test_normalize_keys_maps_dedups_and_drops_unknown(sku_schema):
    out = sku_schema.normalize_keys(["Size", "bogus", "size", "COLOR"])
    assert out == ["size", "color"]


def test_subset_keeps_schema_order(sku_schema):
    sub = sku_schema.subset(["sku", "color"])
    assert sub.keys() == ["color", "sku"]
    assert "size" not in sub


def test_as_lines_renders_key_label_pairs(labels_schema):
    assert labels_schema.as_lines() == "color: Color\nsku: SKU"
    assert labels_schema.as_lines(prefix="- ").splitlines()[0] == "- color: Color"


def test_computed_and_source_fields(sku_schema):
    assert sku_schema.computed_fields() == ["sku"]
    assert "sku" not in sku_schema.source_fields()
    assert set(sku_schema.source_fields()) == {"name", "color", "size", "season"}


def test_template_dependencies_resolve_dotted_placeholders(sku_schema):
    deps = sku_schema.template_dependencies()
    assert deps == {"sku": ["name", "color", "size"]}


@pytest.mark.parametrize(
    "keys, expected",
    [
        (["color"], True),
        (["Size"], True),
        (["season"], False),
        ([], False),
        (["sku"], False),  # the computed field itself feeds nothing
    ],
)
def test_feeds_templates(sku_schema, keys, expected):
    assert sku_schema.feeds_templates(keys) is expected


def test_catalog_keys(sku_schema):
    assert sku_schema.catalog_keys() == {"color": "colors"}


def test_coerce_by_type(sku_schema):
    assert sku_schema.coerce("size", "42") == 42
    assert sku_schema.coerce("size", "42.5") == 42.5
    assert sku_schema.coerce("size", "forty") == "forty"
    assert sku_schema.coerce("color", 7) == "7"
    assert sku_schema.coerce("unknown", "x") == "x"


def test_non_finite_numbers_stay_text(sku_schema):
    assert sku_schema.coerce("size", "nan") == "nan"
    assert sku_schema.coerce("size", "inf") == "inf"
    assert sku_schema.coerce("size", " -Infinity ") == " -Infinity "
    assert sku_schema.coerce("size", "1e3") == 1000.0


def test_coerce_boolean():
    schema = FieldSchema([FieldDef(key="active", type="bool")])
    assert schema.coerce("active", "TRUE") is True
    assert schema.coerce("active", "no") is False


def test_from_profile_ignores_disabled_template_and_accepts_name_alias():
    schema = FieldSchema.from_profile([
        {"key": "article", "name": "Article No.", "template": "{brand}-{size}", "use_template": False},
        {"key": "brand", "label": "Brand"},
    ])
    assert schema.labels() == {"article": "Article No.", "brand": "Brand"}
    assert schema.computed_fields() == []


def test_duplicate_keys_rejected():
    with pytest.raises(ValueError):
        FieldSchema([FieldDef(key="a"), FieldDef(key="a")])
