# patch_engine/catalog.py
from __future__ import annotations

from typing import Iterable, Mapping, Optional

from patch_engine.field_schema import FieldSchema

MAX_NAMES_PER_CATALOG = 50


def build_catalog_guide(
    catalogs: Mapping[str, Iterable[str]],
    schema: Optional[FieldSchema] = None,
    *,
    max_names: int = MAX_NAMES_PER_CATALOG,
) -> Optional[str]:
    """
    Render canonical catalog names as `key: a, b, c` lines for the generation
    prompt. With a schema, only catalogs bound to some field's `catalog_key`
    contribute. Returns None when there is nothing to say.
    """
    bound = set(schema.catalog_keys().values()) if schema is not None else None
    lines = []
    for key, names in catalogs.items():
        if bound is not None and key not in bound:
            continue
        uniq = []
        for n in names:
            s = str(n).strip()
            if s and s not in uniq:
                uniq.append(s)
        if uniq:
            lines.append(f"{key}: {', '.join(uniq[:max_names])}")
    return "\n".join(lines) or None
