"""
Project: Order Intake Assistant
File: field_schema.py

The authoritative key set for a working set of records. Every boundary in the
engine (intent fields, scoped projections, candidate patches) is checked
against a FieldSchema; nothing downstream trusts a key the schema does not
know.

Methods & Classes
- class FieldDef (pydantic): key, label, type, required, source, template, catalog_key
- class FieldSchema:
  - from_profile(fields) / from_labels(labels)
  - keys(), labels(), get(key), __contains__, __len__, __iter__
  - canonical_key(key) -> str | None        (case-insensitive)
  - normalize_keys(keys) -> list[str]       (map, drop unknown, de-dup)
  - subset(keys) -> FieldSchema
  - as_lines(prefix="") -> str              ("key: label" per line)
  - source_fields() / computed_fields()
  - template_dependencies() -> {computed_key: [referenced keys]}
  - feeds_templates(keys) -> bool
  - catalog_keys() -> {field_key: catalog_key}
  - coerce(key, value) -> Any

Dependencies
- External: pydantic
- Stdlib: math, re, typing
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, Iterator, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

FieldType = Literal["string", "number", "boolean"]
FieldSource = Literal["extracted", "computed"]

# {brand} or {brand.code}; the part before the first dot names the field
_PLACEHOLDER = re.compile(r"\{\s*([A-Za-z_][\w\- ]*?)(?:\.[\w\-]+)*\s*\}")


class FieldDef(BaseModel):
    key: str = Field(..., min_length=1)
    label: str = Field(default="")
    type: FieldType = Field(default="string")
    required: bool = Field(default=False)
    source: FieldSource = Field(default="extracted")
    template: Optional[str] = Field(default=None)
    catalog_key: Optional[str] = Field(default=None)

    model_config = ConfigDict(extra="ignore")

    @field_validator("key")
    @classmethod
    def _strip_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field key must be non-empty")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        if v is None:
            return "string"
        s = str(v).strip().lower()
        if s in {"int", "integer", "float", "decimal", "numeric"}:
            return "number"
        if s in {"bool"}:
            return "boolean"
        if s in {"text", "str", ""}:
            return "string"
        return s

    @property
    def is_computed(self) -> bool:
        return self.source == "computed" or bool(self.template)


class FieldSchema:
    """Ordered, case-insensitively addressable collection of FieldDefs."""

    def __init__(self, fields: Iterable[FieldDef]):
        self._fields: Dict[str, FieldDef] = {}
        for f in fields:
            if f.key in self._fields:
                raise ValueError(f"duplicate field key: {f.key!r}")
            self._fields[f.key] = f
        self._lookup: Dict[str, str] = {}
        for k in self._fields:
            # first declaration wins when two keys differ only by case
            self._lookup.setdefault(k.lower(), k)

    # ------------------------------ constructors ------------------------------

    @classmethod
    def from_profile(cls, fields: Sequence[Mapping[str, Any]]) -> "FieldSchema":
        """
        Build from profile field dicts. Accepts the profile spelling
        `use_template` (template only counts when it is on) and `name` as an
        alias for `label`.
        """
        defs: List[FieldDef] = []
        for raw in fields:
            data = dict(raw)
            if "label" not in data and "name" in data:
                data["label"] = data["name"]
            if "use_template" in data and not data.get("use_template"):
                data["template"] = None
            if data.get("template") and "source" not in data:
                data["source"] = "computed"
            defs.append(FieldDef.model_validate(data))
        return cls(defs)

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> "FieldSchema":
        return cls(FieldDef(key=k, label=v) for k, v in labels.items())

    # -------------------------------- accessors -------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._fields

    def __iter__(self) -> Iterator[FieldDef]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def get(self, key: str) -> Optional[FieldDef]:
        return self._fields.get(key)

    def keys(self) -> List[str]:
        return list(self._fields)

    def labels(self) -> Dict[str, str]:
        return {k: (f.label or k) for k, f in self._fields.items()}

    def canonical_key(self, key: Any) -> Optional[str]:
        if not isinstance(key, str):
            return None
        k = key.strip()
        if k in self._fields:
            return k
        return self._lookup.get(k.lower())

    def normalize_keys(self, keys: Optional[Iterable[Any]]) -> List[str]:
        out: List[str] = []
        for k in keys or ():
            ck = self.canonical_key(k)
            if ck is not None and ck not in out:
                out.append(ck)
        return out

    def subset(self, keys: Iterable[str]) -> "FieldSchema":
        """Schema restricted to `keys`, in schema order."""
        wanted = set(self.normalize_keys(keys))
        return FieldSchema(f for k, f in self._fields.items() if k in wanted)

    def as_lines(self, prefix: str = "") -> str:
        return "\n".join(f"{prefix}{k}: {label}" for k, label in self.labels().items())

    # ----------------------------- template metadata ---------------------------

    def source_fields(self) -> List[str]:
        return [k for k, f in self._fields.items() if not f.is_computed]

    def computed_fields(self) -> List[str]:
        return [k for k, f in self._fields.items() if f.is_computed]

    def templated_fields(self) -> List[FieldDef]:
        return [f for f in self._fields.values() if f.template]

    def template_dependencies(self) -> Dict[str, List[str]]:
        deps: Dict[str, List[str]] = {}
        for f in self.templated_fields():
            refs = self.normalize_keys(m.group(1).strip() for m in _PLACEHOLDER.finditer(f.template or ""))
            deps[f.key] = [r for r in refs if r != f.key]
        return deps

    def feeds_templates(self, keys: Iterable[str]) -> bool:
        """True when any of `keys` is referenced by another field's template."""
        touched = set(self.normalize_keys(keys))
        if not touched:
            return False
        return any(touched.intersection(refs) for refs in self.template_dependencies().values())

    def catalog_keys(self) -> Dict[str, str]:
        return {k: f.catalog_key for k, f in self._fields.items() if f.catalog_key}

    # --------------------------------- values ---------------------------------

    def coerce(self, key: str, value: Any) -> Any:
        """
        Coerce a generated value to the field's declared type. Numbers that do
        not parse, or parse to nan/inf, stay as the original string.
        """
        f = self._fields.get(key)
        if f is None or value is None:
            return value
        if f.type == "number":
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, (int, float)):
                return value
            s = str(value).strip().replace(",", "")
            try:
                num = float(s)
            except ValueError:
                return value
            if not math.isfinite(num):
                return value
            return int(num) if num.is_integer() and "." not in s and "e" not in s.lower() else num
        if f.type == "boolean":
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() == "true"
        return value if isinstance(value, str) else str(value)
