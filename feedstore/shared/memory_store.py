"""Thread-safe in-process document store, optionally persisted to a JSON file."""
from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from feedstore.shared.document_store import DocumentStore, apply_stages
from feedstore.shared.logging_utils import debug as log_debug
from feedstore.specs.common.datetime_utils import parse_iso_datetime, utc_now
from feedstore.specs.common.errors import NotFoundError, ValidationError
from feedstore.specs.common.index_spec import IndexSpec
from feedstore.specs.common.query import Stage


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store for local runs and tests.

    A single re-entrant lock serialises every operation, which trivially gives
    the per-document atomicity the contract asks for. TTL is enforced lazily:
    expired documents are invisible to readers and dropped by
    :meth:`purge_expired`.
    """

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = threading.RLock()
        self._path = Path(path) if path else None
        self._clock = clock
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexes: Dict[str, List[IndexSpec]] = {}
        self._ttl_fields: Dict[str, str] = {}
        self._load()

    # ── persistence ─────────────────────────────────────────────────────

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            self._collections = json.loads(self._path.read_text())
        except Exception:
            self._collections = {}

    def _flush(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._collections))

    # ── helpers ─────────────────────────────────────────────────────────

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _expired(self, collection: str, doc: Mapping[str, Any]) -> bool:
        field = self._ttl_fields.get(collection)
        if not field:
            return False
        raw = doc.get(field)
        if not isinstance(raw, str):
            return False
        expires = parse_iso_datetime(raw)
        return expires is not None and expires <= self._clock()

    def _live(self, collection: str, doc_id: str) -> Dict[str, Any]:
        doc = self._bucket(collection).get(doc_id)
        if doc is None or self._expired(collection, doc):
            raise NotFoundError(collection, doc_id)
        return doc

    @staticmethod
    def _bump(doc: Dict[str, Any], increments: Optional[Mapping[str, int]]) -> None:
        for field, delta in (increments or {}).items():
            doc[field] = int(doc.get(field) or 0) + delta

    @staticmethod
    def _array(doc: Dict[str, Any], field: str) -> List[Any]:
        value = doc.setdefault(field, [])
        if not isinstance(value, list):
            raise ValidationError(f"Field '{field}' is not an array")
        return value

    # ── contract ────────────────────────────────────────────────────────

    def put(self, collection, doc_id, document, *, partition_key=None, overwrite=True) -> bool:
        with self._lock:
            bucket = self._bucket(collection)
            existing = bucket.get(doc_id)
            if not overwrite and existing is not None and not self._expired(collection, existing):
                return False
            body = copy.deepcopy(dict(document))
            body["id"] = doc_id
            bucket[doc_id] = body
            self._flush()
            return True

    def get(self, collection, doc_id, *, partition_key=None) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._live(collection, doc_id))

    def patch(self, collection, doc_id, fields, *, partition_key=None) -> Dict[str, Any]:
        with self._lock:
            doc = self._live(collection, doc_id)
            doc.update(copy.deepcopy(dict(fields)))
            self._flush()
            return copy.deepcopy(doc)

    def delete(self, collection, doc_id, *, partition_key=None) -> bool:
        with self._lock:
            removed = self._bucket(collection).pop(doc_id, None)
            self._flush()
            return removed is not None

    def increment(self, collection, doc_id, field, delta, *, partition_key=None) -> int:
        with self._lock:
            doc = self._live(collection, doc_id)
            self._bump(doc, {field: delta})
            self._flush()
            return doc[field]

    def array_length(self, collection, doc_id, field, *, partition_key=None) -> int:
        with self._lock:
            value = self._live(collection, doc_id).get(field) or []
            return len(value)

    def append_to_array(
        self, collection, doc_id, field, value, *, increments=None, unique_key=None, partition_key=None
    ) -> bool:
        with self._lock:
            doc = self._live(collection, doc_id)
            items = self._array(doc, field)
            if unique_key is not None:
                wanted = value.get(unique_key)
                if any(isinstance(i, Mapping) and i.get(unique_key) == wanted for i in items):
                    return False
            items.append(copy.deepcopy(value))
            self._bump(doc, increments)
            self._flush()
            return True

    def remove_from_array(
        self, collection, doc_id, field, key, value, *, increments=None, partition_key=None
    ) -> bool:
        with self._lock:
            doc = self._live(collection, doc_id)
            items = self._array(doc, field)
            for idx, item in enumerate(items):
                if isinstance(item, Mapping) and item.get(key) == value:
                    del items[idx]
                    self._bump(doc, increments)
                    self._flush()
                    return True
            return False

    def add_to_set(self, collection, doc_id, field, member, *, increments=None, partition_key=None) -> bool:
        with self._lock:
            doc = self._live(collection, doc_id)
            items = self._array(doc, field)
            if member in items:
                return False
            items.append(member)
            self._bump(doc, increments)
            self._flush()
            return True

    def remove_from_set(self, collection, doc_id, field, member, *, increments=None, partition_key=None) -> bool:
        with self._lock:
            doc = self._live(collection, doc_id)
            items = self._array(doc, field)
            if member not in items:
                return False
            items.remove(member)
            self._bump(doc, increments)
            self._flush()
            return True

    def aggregate(self, collection, stages: Sequence[Stage], *, partition_key=None) -> List[Dict[str, Any]]:
        with self._lock:
            live = [
                copy.deepcopy(d)
                for d in self._bucket(collection).values()
                if not self._expired(collection, d)
            ]
        return apply_stages(live, stages)

    def create_index(self, collection: str, spec: IndexSpec) -> None:
        with self._lock:
            declared = self._indexes.setdefault(collection, [])
            declared[:] = [s for s in declared if s.name != spec.name]
            declared.append(spec)

    def set_ttl(self, collection: str, field: str) -> None:
        with self._lock:
            self._ttl_fields[collection] = field

    def indexes(self, collection: str) -> List[IndexSpec]:
        with self._lock:
            return list(self._indexes.get(collection, []))

    def purge_expired(self) -> int:
        """Drop every expired document; returns how many were removed."""
        removed = 0
        with self._lock:
            for collection in list(self._ttl_fields):
                bucket = self._bucket(collection)
                for doc_id in [k for k, d in bucket.items() if self._expired(collection, d)]:
                    del bucket[doc_id]
                    removed += 1
            if removed:
                self._flush()
        log_debug(None, "memory:ttl:purge", removed=removed)
        return removed
