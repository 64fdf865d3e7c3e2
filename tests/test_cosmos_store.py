# tests/test_cosmos_store.py
from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List

import pytest
from azure.core.exceptions import ServiceRequestError
from azure.cosmos import exceptions

from feedstore.services.feed_query import FeedQueryEngine, encode_cursor
from feedstore.services.index_manager import post_indexes
from feedstore.shared.cosmos_client import translate_cosmos_errors
from feedstore.shared.cosmos_store import CosmosDocumentStore, build_indexing_policy, compile_pipeline
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.enums import FeedSort
from feedstore.specs.common.errors import NotFoundError, TransientStoreError, ValidationError
from feedstore.specs.common.query import Limit, Match, Skip, Sort, SortKey, where
from feedstore.specs.models.feed import FeedFilter, PageRequest


class FakeContainer:
    """Just enough of ContainerProxy to observe what the store sends."""

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.patches: List[Dict[str, Any]] = []
        self.queries: List[Dict[str, Any]] = []
        self.query_rows: List[Dict[str, Any]] = []
        self.reject_patches = False

    def create_item(self, body):
        if body["id"] in self.items:
            raise exceptions.CosmosResourceExistsError(status_code=409, message="Conflict")
        self.items[body["id"]] = dict(body)
        return body

    def upsert_item(self, body):
        self.items[body["id"]] = dict(body)
        return body

    def replace_item(self, item, body, etag=None, match_condition=None):
        self.items[item] = dict(body)
        return {**body, "_etag": '"2"'}

    def read_item(self, item, partition_key):
        if item not in self.items:
            raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
        return {**self.items[item], "_etag": '"1"', "_ts": 1700000000}

    def patch_item(self, item, partition_key, patch_operations, filter_predicate=None):
        self.patches.append(
            {"item": item, "partition_key": partition_key, "ops": patch_operations, "predicate": filter_predicate}
        )
        if item not in self.items:
            raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
        if self.reject_patches:
            raise exceptions.CosmosAccessConditionFailedError(status_code=412, message="Precondition failed")
        doc = self.items[item]
        for op in patch_operations:
            if op["op"] == "incr":
                key = op["path"].lstrip("/")
                doc[key] = doc.get(key, 0) + op["value"]
        return {**doc, "_rid": "x"}

    def query_items(self, **kwargs):
        self.queries.append(kwargs)
        return iter(self.query_rows)


class FakeCosmosClient:
    def __init__(self) -> None:
        self.containers: Dict[str, FakeContainer] = defaultdict(FakeContainer)
        self.settings_calls: List[Dict[str, Any]] = []

    def get_container(self, name: str) -> FakeContainer:
        return self.containers[name]

    def ensure_container(self, name: str, partition_key_path: str) -> FakeContainer:
        return self.containers[name]

    def replace_container_settings(self, name, partition_key_path, *, indexing_policy=None, default_ttl=None):
        self.settings_calls.append(
            {"name": name, "pk": partition_key_path, "indexing_policy": indexing_policy, "default_ttl": default_ttl}
        )


@pytest.fixture()
def cosmos() -> FakeCosmosClient:
    return FakeCosmosClient()


@pytest.fixture()
def cstore(cosmos: FakeCosmosClient) -> CosmosDocumentStore:
    return CosmosDocumentStore(cosmos, partition_keys={"posts": "id", "comments": "postId"})


def test_compile_find_pipeline() -> None:
    query, params = compile_pipeline(
        [
            Match(conditions=[where("postId", "eq", "p1")]),
            Sort(keys=[SortKey(field="createdAt"), SortKey(field="id")]),
            Skip(count=5),
            Limit(count=10),
        ]
    )

    assert query == "SELECT * FROM c WHERE c.postId = @p0 ORDER BY c.createdAt ASC, c.id ASC OFFSET 5 LIMIT 10"
    assert params == [{"name": "@p0", "value": "p1"}]


def test_compile_feed_pipeline_with_cursor() -> None:
    """The feed engine's pipeline compiles into one parameterised query."""
    settings = FeedStoreSettings.create(backend="memory")
    engine = FeedQueryEngine(store=None, settings=settings)
    first_page = engine.build_pipeline(FeedFilter(tag="beach"), FeedSort.NEWEST, PageRequest(limit=2))
    cursor_row = ("2024-01-01T00:00:00.000000Z", "p9")
    cursor = encode_cursor(*cursor_row, FeedSort.NEWEST)
    next_page = engine.build_pipeline(FeedFilter(tag="beach"), FeedSort.NEWEST, PageRequest(limit=2, cursor=cursor))

    query, _ = compile_pipeline(first_page)
    assert query.startswith("SELECT c.id, c.authorId")
    assert "ARRAY_CONTAINS(c.tags, @p0)" in query
    assert query.endswith("ORDER BY c.createdAt DESC, c.id ASC OFFSET 0 LIMIT 3")

    query, params = compile_pipeline(next_page)
    assert "((c.createdAt < @p1) OR (c.createdAt = @p2 AND c.id > @p3))" in query
    assert [p["value"] for p in params] == ["beach", cursor_row[0], cursor_row[0], "p9"]


def test_compile_rejects_out_of_order_stages() -> None:
    with pytest.raises(ValidationError):
        compile_pipeline([Limit(count=1), Match()])
    with pytest.raises(ValidationError):
        compile_pipeline([Match(), Skip(count=2)])
    with pytest.raises(ValidationError):
        compile_pipeline([Match(conditions=[where("a b", "eq", 1)])])


def test_indexing_policy_from_post_indexes() -> None:
    policy = build_indexing_policy(post_indexes())

    assert {"path": "/tags/[]/?"} in policy["includedPaths"]
    assert {"path": "/location/*", "types": ["Point"]} in policy["spatialIndexes"]
    assert [
        {"path": "/createdAt", "order": "descending"},
        {"path": "/id", "order": "ascending"},
    ] in policy["compositeIndexes"]


@pytest.mark.parametrize(
    "raised, expected",
    [
        (exceptions.CosmosResourceNotFoundError(status_code=404, message="gone"), NotFoundError),
        (exceptions.CosmosHttpResponseError(status_code=429, message="throttled"), TransientStoreError),
        (exceptions.CosmosHttpResponseError(status_code=503, message="unavailable"), TransientStoreError),
        (ServiceRequestError("connection reset"), TransientStoreError),
        (exceptions.CosmosHttpResponseError(status_code=400, message="bad"), exceptions.CosmosHttpResponseError),
    ],
)
def test_error_translation(raised: Exception, expected: type) -> None:
    with pytest.raises(expected):
        with translate_cosmos_errors("posts", "p1"):
            raise raised


def test_put_without_overwrite_reports_conflict(cstore: CosmosDocumentStore) -> None:
    assert cstore.put("posts", "p1", {"authorId": "alice"}, overwrite=False) is True
    assert cstore.put("posts", "p1", {"authorId": "bob"}, overwrite=False) is False


def test_put_sets_item_ttl_for_ttl_collections(cstore: CosmosDocumentStore, cosmos: FakeCosmosClient) -> None:
    cstore.set_ttl("posts", "ttlAt")
    cstore.put("posts", "story", {"authorId": "alice", "ttlAt": "2999-01-01T00:00:00.000000Z"})
    cstore.put("posts", "post", {"authorId": "alice"})

    items = cosmos.containers["posts"].items
    assert items["story"]["ttl"] > 0
    assert "ttl" not in items["post"]
    assert cosmos.settings_calls[-1]["default_ttl"] == -1


def test_get_strips_system_keys(cstore: CosmosDocumentStore) -> None:
    cstore.put("posts", "p1", {"authorId": "alice"})

    assert cstore.get("posts", "p1") == {"id": "p1", "authorId": "alice"}


def test_user_ttl_field_kept_outside_ttl_collections(cstore: CosmosDocumentStore, cosmos: FakeCosmosClient) -> None:
    """A plain ``ttl`` key is user data unless the container expires items."""
    cstore.put("comments", "c1", {"postId": "p1", "text": "x"})

    patched = cstore.patch("comments", "c1", {"ttl": 5}, partition_key="p1")

    assert patched["ttl"] == 5
    assert cstore.get("comments", "c1", partition_key="p1")["ttl"] == 5

    cstore.set_ttl("posts", "ttlAt")
    cstore.put("posts", "story", {"authorId": "alice", "ttlAt": "2999-01-01T00:00:00.000000Z"})

    assert cosmos.containers["posts"].items["story"]["ttl"] > 0
    assert "ttl" not in cstore.get("posts", "story")


def test_get_without_partition_key_queries_by_id(cstore: CosmosDocumentStore, cosmos: FakeCosmosClient) -> None:
    container = cosmos.containers["comments"]
    container.query_rows = [{"id": "c1", "postId": "p1", "_etag": "x"}]

    assert cstore.get("comments", "c1") == {"id": "c1", "postId": "p1"}
    assert container.queries[-1]["enable_cross_partition_query"] is True

    container.query_rows = []
    with pytest.raises(NotFoundError):
        cstore.get("comments", "c2")


def test_append_with_unique_key_uses_precondition(cstore: CosmosDocumentStore, cosmos: FakeCosmosClient) -> None:
    cstore.put("posts", "p1", {"authorId": "alice", "embeddedComments": [], "commentsCount": 0})
    container = cosmos.containers["posts"]

    assert cstore.append_to_array(
        "posts", "p1", "embeddedComments", {"id": "c1"}, increments={"commentsCount": 1}, unique_key="id"
    )
    patch = container.patches[-1]
    assert patch["predicate"] == 'FROM c WHERE NOT ARRAY_CONTAINS(c.embeddedComments, {"id": "c1"}, true)'
    assert patch["ops"][0] == {"op": "add", "path": "/embeddedComments/-", "value": {"id": "c1"}}
    assert patch["ops"][1] == {"op": "incr", "path": "/commentsCount", "value": 1}

    container.reject_patches = True
    assert not cstore.append_to_array("posts", "p1", "embeddedComments", {"id": "c1"}, unique_key="id")


def test_increment_missing_document(cstore: CosmosDocumentStore) -> None:
    with pytest.raises(NotFoundError):
        cstore.increment("posts", "ghost", "commentsCount", 1)


def test_increment_returns_patched_value(cstore: CosmosDocumentStore) -> None:
    cstore.put("posts", "p1", {"authorId": "alice", "commentsCount": 2})

    assert cstore.increment("posts", "p1", "commentsCount", 3) == 5


def test_add_to_set_duplicate_is_rejected_by_precondition(
    cstore: CosmosDocumentStore, cosmos: FakeCosmosClient
) -> None:
    cstore.put("posts", "p1", {"authorId": "alice", "likedBy": ["bob"], "likesCount": 1})
    cosmos.containers["posts"].reject_patches = True

    assert cstore.add_to_set("posts", "p1", "likedBy", "bob", increments={"likesCount": 1}) is False
    assert cosmos.containers["posts"].patches[-1]["predicate"] == 'FROM c WHERE NOT ARRAY_CONTAINS(c.likedBy, "bob")'


def test_create_indexes_replaces_policy_once(cstore: CosmosDocumentStore, cosmos: FakeCosmosClient) -> None:
    cstore.create_indexes("posts", post_indexes())

    assert len(cosmos.settings_calls) == 1
    assert cosmos.settings_calls[0]["pk"] == "/id"
    assert [s.name for s in cstore.indexes("posts")] == [s.name for s in post_indexes()]
