# patch_engine/store.py
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

import yaml

from patch_engine.field_schema import FieldSchema
from patch_engine.records import Patch, Record


@runtime_checkable
class RecordStore(Protocol):
    """Reads and writes one working set. Last writer wins per id."""

    def fetch(self, ids: Optional[Iterable[str]] = None) -> List[Record]: ...

    def apply(self, patches: Sequence[Patch]) -> List[Record]: ...


@runtime_checkable
class SchemaSource(Protocol):
    def fetch(self, profile_id: str) -> FieldSchema: ...


def _merge(records: Dict[str, Record], patches: Sequence[Patch]) -> List[Record]:
    """Shallow-merge each patch's updates into its record; unknown ids are skipped."""
    touched: List[str] = []
    for p in patches:
        rec = records.get(p.id)
        if rec is None:
            continue
        records[p.id] = Record(id=rec.id, data={**rec.data, **p.updates})
        if p.id not in touched:
            touched.append(p.id)
    return [records[i] for i in touched]


def _select(records: Dict[str, Record], ids: Optional[Iterable[str]]) -> List[Record]:
    if ids is None:
        return list(records.values())
    wanted = {str(i) for i in ids}
    return [r for rid, r in records.items() if rid in wanted]


class InMemoryRecordStore:
    def __init__(self, records: Iterable[Record | Dict[str, Any]] = ()) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Record] = {}
        for r in records:
            rec = r if isinstance(r, Record) else Record.model_validate(r)
            self._records[rec.id] = rec

    def fetch(self, ids: Optional[Iterable[str]] = None) -> List[Record]:
        with self._lock:
            return _select(self._records, ids)

    def apply(self, patches: Sequence[Patch]) -> List[Record]:
        with self._lock:
            return _merge(self._records, patches)


# ------------------------------- on-disk layout -------------------------------

@dataclass(frozen=True)
class _Paths:
    root: Path
    order: str

    @property
    def order_dir(self) -> Path:
        return self.root / "orders" / self.order

    @property
    def items_json(self) -> Path:
        return self.order_dir / "items.json"

    @property
    def profile_json(self) -> Path:
        return self.order_dir / "profile.json"

    @property
    def profile_yaml(self) -> Path:
        return self.order_dir / "profile.yaml"

    @property
    def catalog_json(self) -> Path:
        return self.order_dir / "catalog.json"

    @property
    def turn_log_jsonl(self) -> Path:
        return self.order_dir / "turn_log.jsonl"


class LocalRecordStore:
    """
    Local, order-first storage for working sets.

    PUBLIC API:
    -----------
      list_orders() -> List[Dict[str, Any]]
      read_items(order) -> List[Record]
      write_items(order, records) -> None
      fetch_schema(order) -> FieldSchema
      read_catalog(order) -> Dict[str, List[str]]
      append_turn_log(order, packet) -> None
      working_set(order) -> OrderRecordStore     (RecordStore for one order)
      schema_source() -> LocalSchemaSource       (SchemaSource over profile files)

    INTERNALS:
      - On-disk layout is private to this class:
          orders/<order>/items.json, profile.json | profile.yaml,
          catalog.json, turn_log.jsonl
      - Writes go to a tmp file and replace the target.
    """

    def __init__(self, root: str | Path = "local_store") -> None:
        self.root = Path(root)
        (self.root / "orders").mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ------------------------------- helpers ---------------------------------

    def _p(self, order: str | int) -> _Paths:
        return _Paths(root=self.root, order=str(order))

    @staticmethod
    def _read_json(path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def _write_json_atomic(path: Path, obj: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _append_jsonl(path: Path, obj: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")

    @staticmethod
    def _read_last_jsonl_line(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        last = None
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    last = line
        return json.loads(last) if last else None

    # ------------------------------ core I/O ----------------------------------

    def read_items(self, order: str | int) -> List[Record]:
        p = self._p(order)
        if not p.items_json.exists():
            raise FileNotFoundError(f"items.json not found for order {order} at {p.items_json}")
        raw = self._read_json(p.items_json)
        # allow both shapes: {"items": [...]} or [...]
        items = raw.get("items", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise ValueError(f"Expected a list of items in {p.items_json}")
        return [Record.model_validate(i) for i in items]

    def write_items(self, order: str | int, records: Sequence[Record]) -> None:
        p = self._p(order)
        self._write_json_atomic(p.items_json, {"items": [r.model_dump() for r in records]})

    def fetch_schema(self, order: str | int) -> FieldSchema:
        p = self._p(order)
        if p.profile_json.exists():
            raw = self._read_json(p.profile_json)
        elif p.profile_yaml.exists():
            raw = yaml.safe_load(p.profile_yaml.read_text(encoding="utf-8"))
        else:
            raise FileNotFoundError(f"profile.json/profile.yaml not found for order {order}")
        # allow {"fields": [...]}, [...] or a plain {key: label} map
        if isinstance(raw, dict) and "fields" in raw:
            raw = raw["fields"]
        if isinstance(raw, list):
            return FieldSchema.from_profile(raw)
        if isinstance(raw, dict):
            return FieldSchema.from_labels({str(k): str(v) for k, v in raw.items()})
        raise ValueError(f"Unrecognized profile shape for order {order}")

    def read_catalog(self, order: str | int) -> Dict[str, List[str]]:
        p = self._p(order)
        if not p.catalog_json.exists():
            return {}
        raw = self._read_json(p.catalog_json)
        raw = raw.get("catalogs", raw) if isinstance(raw, dict) else {}
        return {str(k): [str(x) for x in (v or [])] for k, v in raw.items() if isinstance(v, list)}

    def append_turn_log(self, order: str | int, packet: Dict[str, Any]) -> None:
        pkt = dict(packet)
        pkt.setdefault("timestamp", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
        self._append_jsonl(self._p(order).turn_log_jsonl, pkt)

    def apply(self, order: str | int, patches: Sequence[Patch]) -> List[Record]:
        with self._lock:
            records = {r.id: r for r in self.read_items(order)}
            touched = _merge(records, patches)
            if touched:
                self.write_items(order, list(records.values()))
        return touched

    # ------------------------------- listings ---------------------------------

    def list_orders(self) -> List[Dict[str, Any]]:
        """
        Compact list of working sets:
        [{"order_id": "...", "item_count": int, "last_turn_at": "..."}]
        """
        out: List[Dict[str, Any]] = []
        orders_root = self.root / "orders"
        for d in sorted((p for p in orders_root.iterdir() if p.is_dir()), key=lambda p: p.name):
            p = self._p(d.name)
            if not p.items_json.exists():
                continue
            last_pkt = self._read_last_jsonl_line(p.turn_log_jsonl)
            out.append({
                "order_id": d.name,
                "item_count": len(self.read_items(d.name)),
                "last_turn_at": (last_pkt or {}).get("timestamp", ""),
            })
        return out

    # ------------------------------ adapters ----------------------------------

    def working_set(self, order: str | int) -> "OrderRecordStore":
        return OrderRecordStore(self, str(order))

    def schema_source(self) -> "LocalSchemaSource":
        return LocalSchemaSource(self)


class OrderRecordStore:
    """RecordStore view of one order in a LocalRecordStore."""

    def __init__(self, store: LocalRecordStore, order: str) -> None:
        self._store = store
        self.order = order

    def fetch(self, ids: Optional[Iterable[str]] = None) -> List[Record]:
        return _select({r.id: r for r in self._store.read_items(self.order)}, ids)

    def apply(self, patches: Sequence[Patch]) -> List[Record]:
        return self._store.apply(self.order, patches)


class LocalSchemaSource:
    def __init__(self, store: LocalRecordStore) -> None:
        self._store = store

    def fetch(self, profile_id: str) -> FieldSchema:
        return self._store.fetch_schema(profile_id)
