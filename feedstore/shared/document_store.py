"""Document store contract shared by the in-memory and Cosmos DB backends."""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from feedstore.specs.common.index_spec import IndexSpec
from feedstore.specs.common.query import (
    Condition,
    GeoNear,
    Limit,
    Match,
    Project,
    Skip,
    Sort,
    SortKey,
    Stage,
    build_find_pipeline,
)

_MISSING = object()
_EARTH_RADIUS_METERS = 6_371_000.0


class DocumentStore(ABC):
    """Collection/id keyed JSON document storage.

    Every mutating method touches exactly one document and is atomic with
    respect to concurrent calls on that document. There are no multi-document
    transactions. ``partition_key`` is a routing hint for backends that
    partition data; backends that do not need it ignore it.
    """

    @abstractmethod
    def put(
        self,
        collection: str,
        doc_id: str,
        document: Dict[str, Any],
        *,
        partition_key: Optional[str] = None,
        overwrite: bool = True,
    ) -> bool:
        """Write a full document. Returns False when ``overwrite`` is off and the id exists."""

    @abstractmethod
    def get(self, collection: str, doc_id: str, *, partition_key: Optional[str] = None) -> Dict[str, Any]:
        """Return a document or raise NotFoundError (expired documents count as missing)."""

    @abstractmethod
    def patch(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        partition_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set top-level keys, preserving every key not named. Returns the new document."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str, *, partition_key: Optional[str] = None) -> bool:
        """Delete a document; returns False if it was already gone."""

    @abstractmethod
    def increment(
        self,
        collection: str,
        doc_id: str,
        field: str,
        delta: int,
        *,
        partition_key: Optional[str] = None,
    ) -> int:
        """Atomically add ``delta`` to a numeric field and return the new value."""

    @abstractmethod
    def array_length(
        self, collection: str, doc_id: str, field: str, *, partition_key: Optional[str] = None
    ) -> int:
        """Length of an array field without transferring its content."""

    @abstractmethod
    def append_to_array(
        self,
        collection: str,
        doc_id: str,
        field: str,
        value: Any,
        *,
        increments: Optional[Mapping[str, int]] = None,
        unique_key: Optional[str] = None,
        partition_key: Optional[str] = None,
    ) -> bool:
        """Append to an array and bump counters in one atomic update.

        With ``unique_key`` set, an element whose ``unique_key`` equals the
        new value's is treated as already present: nothing changes and the
        call returns False.
        """

    @abstractmethod
    def remove_from_array(
        self,
        collection: str,
        doc_id: str,
        field: str,
        key: str,
        value: Any,
        *,
        increments: Optional[Mapping[str, int]] = None,
        partition_key: Optional[str] = None,
    ) -> bool:
        """Remove the array element whose ``key`` equals ``value`` and bump counters."""

    @abstractmethod
    def add_to_set(
        self,
        collection: str,
        doc_id: str,
        field: str,
        member: Any,
        *,
        increments: Optional[Mapping[str, int]] = None,
        partition_key: Optional[str] = None,
    ) -> bool:
        """Add ``member`` to an array used as a set; False if already a member."""

    @abstractmethod
    def remove_from_set(
        self,
        collection: str,
        doc_id: str,
        field: str,
        member: Any,
        *,
        increments: Optional[Mapping[str, int]] = None,
        partition_key: Optional[str] = None,
    ) -> bool:
        """Remove ``member`` from a set array; False if it was not a member."""

    @abstractmethod
    def aggregate(
        self,
        collection: str,
        stages: Sequence[Stage],
        *,
        partition_key: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Run a match/sort/skip/limit/project pipeline."""

    @abstractmethod
    def create_index(self, collection: str, spec: IndexSpec) -> None:
        """Declare a secondary index."""

    @abstractmethod
    def set_ttl(self, collection: str, field: str) -> None:
        """Expire documents of ``collection`` once the timestamp in ``field`` has passed."""

    @abstractmethod
    def indexes(self, collection: str) -> List[IndexSpec]:
        """Indexes declared so far for ``collection``."""

    def create_indexes(self, collection: str, specs: Sequence[IndexSpec]) -> None:
        for spec in specs:
            self.create_index(collection, spec)

    def find_many(
        self,
        collection: str,
        conditions: Optional[List[Condition]] = None,
        sort: Optional[List[SortKey]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        partition_key: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        stages = build_find_pipeline(conditions, sort, limit, offset)
        return self.aggregate(collection, stages, partition_key=partition_key)

    def delete_many(
        self,
        collection: str,
        conditions: List[Condition],
        *,
        partition_key: Optional[str] = None,
    ) -> int:
        """Delete every matching document, one at a time. Returns the number removed."""
        docs = self.find_many(collection, conditions, partition_key=partition_key)
        removed = 0
        for doc in docs:
            if self.delete(collection, doc["id"], partition_key=partition_key):
                removed += 1
        return removed


# ── in-process pipeline evaluation ─────────────────────────────────────────


def resolve_field(document: Mapping[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def haversine_meters(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * _EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


def condition_matches(document: Mapping[str, Any], condition: Condition) -> bool:
    actual = resolve_field(document, condition.field)
    if actual is _MISSING:
        return False
    op, expected = condition.op, condition.value
    try:
        if op == "eq":
            return actual == expected
        if op == "ne":
            return actual != expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "in":
            return actual in expected
        if op == "contains":
            return isinstance(actual, list) and expected in actual
        if op == "substring":
            return isinstance(actual, str) and str(expected).lower() in actual.lower()
        if op == "near":
            near = expected if isinstance(expected, GeoNear) else GeoNear.model_validate(expected)
            coords = actual.get("coordinates") if isinstance(actual, Mapping) else None
            if not coords or len(coords) != 2:
                return False
            distance = haversine_meters(coords[0], coords[1], near.longitude, near.latitude)
            return distance <= near.maxDistanceMeters
    except TypeError:
        # Values of incomparable types never match
        return False
    raise ValueError(f"Unsupported operator: {op}")


def match_document(document: Mapping[str, Any], match: Match) -> bool:
    if not all(condition_matches(document, c) for c in match.conditions):
        return False
    if match.anyOf:
        return any(all(condition_matches(document, c) for c in group) for group in match.anyOf)
    return True


def _sort_value(document: Mapping[str, Any], field: str) -> tuple:
    value = resolve_field(document, field)
    if value is _MISSING or value is None:
        return (0, "")
    return (1, value)


def apply_stages(documents: Iterable[Dict[str, Any]], stages: Sequence[Stage]) -> List[Dict[str, Any]]:
    """Evaluate pipeline stages over already-loaded documents."""
    rows = list(documents)
    for stage in stages:
        if isinstance(stage, Match):
            rows = [d for d in rows if match_document(d, stage)]
        elif isinstance(stage, Sort):
            # Stable multi-key sort: apply keys from least to most significant
            for key in reversed(stage.keys):
                rows.sort(key=lambda d, f=key.field: _sort_value(d, f), reverse=key.descending)
        elif isinstance(stage, Skip):
            rows = rows[stage.count:]
        elif isinstance(stage, Limit):
            rows = rows[: stage.count]
        elif isinstance(stage, Project):
            rows = [{f: d[f] for f in stage.fields if f in d} for d in rows]
        else:
            raise ValueError(f"Unsupported pipeline stage: {stage!r}")
    return rows
