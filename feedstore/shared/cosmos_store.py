"""Azure Cosmos DB backend for the document store contract."""
from __future__ import annotations

import json
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from azure.core import MatchConditions
from azure.cosmos import exceptions

from feedstore.shared.cosmos_client import CosmosDBClient, translate_cosmos_errors
from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import debug as log_debug, info as log_info
from feedstore.specs.common.datetime_utils import parse_iso_datetime, utc_now
from feedstore.specs.common.enums import IndexKind
from feedstore.specs.common.errors import NotFoundError, TransientStoreError, ValidationError
from feedstore.specs.common.index_spec import IndexSpec
from feedstore.specs.common.query import Condition, GeoNear, Limit, Match, Project, Skip, Sort, Stage

SYSTEM_KEYS = frozenset({"_rid", "_self", "_etag", "_attachments", "_ts", "_lsn"})
_FIELD_PART = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_STAGE_RANK = {Match: 0, Sort: 1, Skip: 2, Limit: 3, Project: 4}
_COMPARISONS = {"eq": "=", "ne": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}
# Optimistic read-modify-write attempts before giving up as transient
_CAS_ATTEMPTS = 5


def field_path(field: str, alias: str = "c") -> str:
    parts = field.split(".")
    if not all(_FIELD_PART.match(p) for p in parts):
        raise ValidationError(f"Unsupported field path: {field!r}")
    return ".".join([alias, *parts])


def literal(value: Any) -> str:
    """Render a JSON value as a Cosmos SQL literal (used where parameters are not accepted)."""
    return json.dumps(value)


def _compile_condition(condition: Condition, params: List[Dict[str, Any]]) -> str:
    def bind(value: Any) -> str:
        name = f"@p{len(params)}"
        params.append({"name": name, "value": value})
        return name

    path = field_path(condition.field)
    op = condition.op
    if op in _COMPARISONS:
        return f"{path} {_COMPARISONS[op]} {bind(condition.value)}"
    if op == "in":
        return f"ARRAY_CONTAINS({bind(list(condition.value))}, {path})"
    if op == "contains":
        return f"ARRAY_CONTAINS({path}, {bind(condition.value)})"
    if op == "substring":
        return f"CONTAINS({path}, {bind(str(condition.value))}, true)"
    if op == "near":
        near = condition.value if isinstance(condition.value, GeoNear) else GeoNear.model_validate(condition.value)
        point = {"type": "Point", "coordinates": [near.longitude, near.latitude]}
        return f"ST_DISTANCE({path}, {bind(point)}) <= {bind(near.maxDistanceMeters)}"
    raise ValidationError(f"Unsupported operator: {op}")


def compile_pipeline(stages: Sequence[Stage]) -> Tuple[str, List[Dict[str, Any]]]:
    """Translate pipeline stages into a parameterised Cosmos SQL query.

    Stages must be in canonical order (match, sort, skip, limit, project);
    several match stages are combined with AND.
    """
    params: List[Dict[str, Any]] = []
    where: List[str] = []
    order_by: List[str] = []
    skip: Optional[int] = None
    limit: Optional[int] = None
    select = "*"
    last_rank = -1
    for stage in stages:
        rank = _STAGE_RANK[type(stage)]
        if rank < last_rank or (rank == last_rank and rank != 0):
            raise ValidationError(f"Pipeline stage '{stage.stage}' out of order for Cosmos")
        last_rank = rank
        if isinstance(stage, Match):
            where.extend(_compile_condition(c, params) for c in stage.conditions)
            if stage.anyOf:
                groups = [
                    "(" + " AND ".join(_compile_condition(c, params) for c in group) + ")"
                    for group in stage.anyOf
                ]
                where.append("(" + " OR ".join(groups) + ")")
        elif isinstance(stage, Sort):
            order_by = [f"{field_path(k.field)} {'DESC' if k.descending else 'ASC'}" for k in stage.keys]
        elif isinstance(stage, Skip):
            skip = stage.count
        elif isinstance(stage, Limit):
            limit = stage.count
        elif isinstance(stage, Project):
            select = ", ".join(field_path(f) for f in stage.fields)

    query = f"SELECT {select} FROM c"
    if where:
        query += " WHERE " + " AND ".join(where)
    if order_by:
        query += " ORDER BY " + ", ".join(order_by)
    if skip is not None or limit is not None:
        if limit is None:
            raise ValidationError("Cosmos queries need a limit when skipping")
        query += f" OFFSET {skip or 0} LIMIT {limit}"
    return query, params


def build_indexing_policy(specs: Sequence[IndexSpec]) -> Dict[str, Any]:
    policy: Dict[str, Any] = {
        "indexingMode": "consistent",
        "automatic": True,
        "includedPaths": [{"path": "/*"}],
        "excludedPaths": [{"path": '/"_etag"/?'}],
        "compositeIndexes": [],
        "spatialIndexes": [],
    }
    for spec in specs:
        if spec.kind == IndexKind.RANGE:
            policy["includedPaths"].extend({"path": f"/{f.path}/?"} for f in spec.fields)
        elif spec.kind == IndexKind.MULTIKEY:
            policy["includedPaths"].extend({"path": f"/{f.path}/[]/?"} for f in spec.fields)
        elif spec.kind == IndexKind.GEO:
            policy["spatialIndexes"].extend({"path": f"/{f.path}/*", "types": ["Point"]} for f in spec.fields)
        elif spec.kind == IndexKind.COMPOSITE:
            policy["compositeIndexes"].append(
                [
                    {"path": f"/{f.path}", "order": "descending" if f.descending else "ascending"}
                    for f in spec.fields
                ]
            )
    return policy


def strip_system_keys(item: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if k not in SYSTEM_KEYS}


class CosmosDocumentStore(DocumentStore):
    """Document store on Cosmos DB containers.

    Single-document atomicity comes from partial document update
    (``patch_item``) with ``filter_predicate`` preconditions, or from
    etag-guarded replace for multi-field patches.
    """

    def __init__(
        self,
        client: CosmosDBClient,
        partition_keys: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._client = client
        self._partition_keys = dict(partition_keys or {})
        self._ttl_fields: Dict[str, str] = {}
        self._declared: Dict[str, List[IndexSpec]] = {}

    # ── helpers ─────────────────────────────────────────────────────────

    def _pk_field(self, collection: str) -> str:
        return self._partition_keys.get(collection, "id")

    def _container(self, collection: str):
        return self._client.get_container(collection)

    def _pk(self, collection: str, doc_id: str, partition_key: Optional[str]) -> Optional[str]:
        if partition_key is not None:
            return partition_key
        return doc_id if self._pk_field(collection) == "id" else None

    def _resolve_pk(self, collection: str, doc_id: str, partition_key: Optional[str]) -> str:
        pk = self._pk(collection, doc_id, partition_key)
        if pk is not None:
            return pk
        doc = self.get(collection, doc_id)
        return doc[self._pk_field(collection)]

    def _with_ttl(self, collection: str, body: Dict[str, Any]) -> Dict[str, Any]:
        field = self._ttl_fields.get(collection)
        if not field:
            return body
        raw = body.get(field)
        expires = parse_iso_datetime(raw) if isinstance(raw, str) else None
        if expires is not None:
            body["ttl"] = expires_in_seconds(expires)
        else:
            body.pop("ttl", None)
        return body

    def _strip(self, collection: str, item: Mapping[str, Any]) -> Dict[str, Any]:
        doc = strip_system_keys(item)
        if collection in self._ttl_fields:
            # Derived from the TTL field on every write; not user data here
            doc.pop("ttl", None)
        return doc

    def _conditional_patch(
        self,
        collection: str,
        doc_id: str,
        pk: str,
        operations: List[Dict[str, Any]],
        predicate: Optional[str],
    ) -> bool:
        container = self._container(collection)
        with translate_cosmos_errors(collection, doc_id):
            try:
                container.patch_item(
                    item=doc_id,
                    partition_key=pk,
                    patch_operations=operations,
                    filter_predicate=predicate,
                )
            except exceptions.CosmosAccessConditionFailedError:
                return False
        return True

    @staticmethod
    def _incr_ops(increments: Optional[Mapping[str, int]]) -> List[Dict[str, Any]]:
        return [{"op": "incr", "path": f"/{f}", "value": d} for f, d in (increments or {}).items()]

    # ── contract ────────────────────────────────────────────────────────

    def put(self, collection, doc_id, document, *, partition_key=None, overwrite=True) -> bool:
        body = self._with_ttl(collection, {**document, "id": doc_id})
        container = self._container(collection)
        with translate_cosmos_errors(collection, doc_id):
            if overwrite:
                container.upsert_item(body=body)
                return True
            try:
                container.create_item(body=body)
            except exceptions.CosmosResourceExistsError:
                log_debug(None, "cosmos:put:exists", container=collection, id=doc_id)
                return False
        return True

    def get(self, collection, doc_id, *, partition_key=None) -> Dict[str, Any]:
        container = self._container(collection)
        pk = self._pk(collection, doc_id, partition_key)
        with translate_cosmos_errors(collection, doc_id):
            if pk is not None:
                return self._strip(collection, container.read_item(item=doc_id, partition_key=pk))
            # Partition unknown: fall back to a cross-partition lookup by id
            items = list(
                container.query_items(
                    query="SELECT * FROM c WHERE c.id = @id",
                    parameters=[{"name": "@id", "value": doc_id}],
                    enable_cross_partition_query=True,
                )
            )
        if not items:
            raise NotFoundError(collection, doc_id)
        return self._strip(collection, items[0])

    def patch(self, collection, doc_id, fields, *, partition_key=None) -> Dict[str, Any]:
        container = self._container(collection)
        pk = self._resolve_pk(collection, doc_id, partition_key)
        for _ in range(_CAS_ATTEMPTS):
            with translate_cosmos_errors(collection, doc_id):
                current = container.read_item(item=doc_id, partition_key=pk)
                body = self._with_ttl(collection, {**strip_system_keys(current), **dict(fields), "id": doc_id})
                try:
                    updated = container.replace_item(
                        item=doc_id,
                        body=body,
                        etag=current.get("_etag"),
                        match_condition=MatchConditions.IfNotModified,
                    )
                except exceptions.CosmosAccessConditionFailedError:
                    continue
            return self._strip(collection, updated)
        raise TransientStoreError(
            f"Concurrent modification kept winning on '{collection}'", details={"docId": doc_id}
        )

    def delete(self, collection, doc_id, *, partition_key=None) -> bool:
        container = self._container(collection)
        try:
            pk = self._resolve_pk(collection, doc_id, partition_key)
        except NotFoundError:
            return False
        with translate_cosmos_errors(collection, doc_id):
            try:
                container.delete_item(item=doc_id, partition_key=pk)
            except exceptions.CosmosResourceNotFoundError:
                log_info(None, "cosmos:delete:already_deleted", container=collection, id=doc_id)
                return False
        return True

    def increment(self, collection, doc_id, field, delta, *, partition_key=None) -> int:
        container = self._container(collection)
        pk = self._resolve_pk(collection, doc_id, partition_key)
        with translate_cosmos_errors(collection, doc_id):
            updated = container.patch_item(
                item=doc_id,
                partition_key=pk,
                patch_operations=[{"op": "incr", "path": f"/{field}", "value": delta}],
            )
        return int(updated.get(field) or 0)

    def array_length(self, collection, doc_id, field, *, partition_key=None) -> int:
        container = self._container(collection)
        query = f'SELECT VALUE {{"n": ARRAY_LENGTH({field_path(field)})}} FROM c WHERE c.id = @id'
        kwargs: Dict[str, Any] = {"query": query, "parameters": [{"name": "@id", "value": doc_id}]}
        pk = self._pk(collection, doc_id, partition_key)
        if pk is not None:
            kwargs["partition_key"] = pk
        else:
            kwargs["enable_cross_partition_query"] = True
        with translate_cosmos_errors(collection, doc_id):
            rows = list(container.query_items(**kwargs))
        if not rows:
            raise NotFoundError(collection, doc_id)
        return int(rows[0].get("n") or 0)

    def append_to_array(
        self, collection, doc_id, field, value, *, increments=None, unique_key=None, partition_key=None
    ) -> bool:
        pk = self._resolve_pk(collection, doc_id, partition_key)
        operations = [{"op": "add", "path": f"/{field}/-", "value": value}, *self._incr_ops(increments)]
        predicate = None
        if unique_key is not None:
            needle = literal({unique_key: value.get(unique_key)})
            predicate = f"FROM c WHERE NOT ARRAY_CONTAINS({field_path(field)}, {needle}, true)"
        applied = self._conditional_patch(collection, doc_id, pk, operations, predicate)
        if not applied:
            # Precondition failure on a missing document surfaces as 404 above,
            # so a False here means the element is already present.
            log_debug(None, "cosmos:append:duplicate", container=collection, id=doc_id)
        return applied

    def remove_from_array(
        self, collection, doc_id, field, key, value, *, increments=None, partition_key=None
    ) -> bool:
        pk = self._resolve_pk(collection, doc_id, partition_key)
        for _ in range(_CAS_ATTEMPTS):
            doc = self.get(collection, doc_id, partition_key=pk)
            items = doc.get(field) or []
            index = next(
                (i for i, item in enumerate(items) if isinstance(item, Mapping) and item.get(key) == value),
                None,
            )
            if index is None:
                return False
            operations = [{"op": "remove", "path": f"/{field}/{index}"}, *self._incr_ops(increments)]
            # Guard against the array shifting between our read and the patch
            predicate = f"FROM c WHERE {field_path(field)}[{index}].{key} = {literal(value)}"
            if self._conditional_patch(collection, doc_id, pk, operations, predicate):
                return True
        raise TransientStoreError(
            f"Array kept changing while removing from '{collection}'", details={"docId": doc_id}
        )

    def add_to_set(self, collection, doc_id, field, member, *, increments=None, partition_key=None) -> bool:
        pk = self._resolve_pk(collection, doc_id, partition_key)
        operations = [{"op": "add", "path": f"/{field}/-", "value": member}, *self._incr_ops(increments)]
        predicate = f"FROM c WHERE NOT ARRAY_CONTAINS({field_path(field)}, {literal(member)})"
        return self._conditional_patch(collection, doc_id, pk, operations, predicate)

    def remove_from_set(self, collection, doc_id, field, member, *, increments=None, partition_key=None) -> bool:
        pk = self._resolve_pk(collection, doc_id, partition_key)
        for _ in range(_CAS_ATTEMPTS):
            doc = self.get(collection, doc_id, partition_key=pk)
            items = doc.get(field) or []
            if member not in items:
                return False
            index = items.index(member)
            operations = [{"op": "remove", "path": f"/{field}/{index}"}, *self._incr_ops(increments)]
            predicate = f"FROM c WHERE {field_path(field)}[{index}] = {literal(member)}"
            if self._conditional_patch(collection, doc_id, pk, operations, predicate):
                return True
        raise TransientStoreError(
            f"Set kept changing while removing from '{collection}'", details={"docId": doc_id}
        )

    def aggregate(self, collection, stages: Sequence[Stage], *, partition_key=None) -> List[Dict[str, Any]]:
        query, params = compile_pipeline(stages)
        container = self._container(collection)
        kwargs: Dict[str, Any] = {"query": query, "parameters": params}
        if partition_key is not None:
            kwargs["partition_key"] = partition_key
        else:
            kwargs["enable_cross_partition_query"] = True
        log_debug(None, "cosmos:aggregate", container=collection, query=query)
        with translate_cosmos_errors(collection):
            return [self._strip(collection, item) for item in container.query_items(**kwargs)]

    def create_index(self, collection: str, spec: IndexSpec) -> None:
        self.create_indexes(collection, [spec])

    def create_indexes(self, collection: str, specs: Sequence[IndexSpec]) -> None:
        # One container replace per batch; each replace triggers a re-index
        declared = self._declared.setdefault(collection, [])
        names = {s.name for s in specs}
        declared[:] = [s for s in declared if s.name not in names] + list(specs)
        self._client.replace_container_settings(
            collection,
            f"/{self._pk_field(collection)}",
            indexing_policy=build_indexing_policy(declared),
        )

    def set_ttl(self, collection: str, field: str) -> None:
        self._ttl_fields[collection] = field
        # -1: items never expire unless they carry their own ttl
        self._client.replace_container_settings(collection, f"/{self._pk_field(collection)}", default_ttl=-1)

    def indexes(self, collection: str) -> List[IndexSpec]:
        return list(self._declared.get(collection, []))

    def ensure_containers(self, collections: Sequence[str]) -> None:
        for name in collections:
            self._client.ensure_container(name, f"/{self._pk_field(name)}")


def expires_in_seconds(expires_at: datetime) -> int:
    return max(1, math.ceil((expires_at - utc_now()).total_seconds()))
