# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from feedstore.app import FeedStoreApp, build_app
from feedstore.services.user_info import StaticUserInfoProvider
from feedstore.shared.memory_store import InMemoryDocumentStore
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.errors import TransientStoreError
from feedstore.specs.models.feed import AuthorInfo

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FlakyStore(InMemoryDocumentStore):
    """In-memory store that raises TransientStoreError on demand."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failures: dict[tuple[str, str], int] = {}

    def fail(self, method: str, collection: str, times: int = 1) -> None:
        self.failures[(method, collection)] = times

    def _maybe_fail(self, method: str, collection: str) -> None:
        remaining = self.failures.get((method, collection), 0)
        if remaining > 0:
            self.failures[(method, collection)] = remaining - 1
            raise TransientStoreError(f"injected {method} failure on {collection}")

    def put(self, collection, doc_id, document, **kwargs):
        self._maybe_fail("put", collection)
        return super().put(collection, doc_id, document, **kwargs)

    def increment(self, collection, doc_id, field, delta, **kwargs):
        self._maybe_fail("increment", collection)
        return super().increment(collection, doc_id, field, delta, **kwargs)

    def find_many(self, collection, *args, **kwargs):
        self._maybe_fail("find_many", collection)
        return super().find_many(collection, *args, **kwargs)


class SpyUserInfoProvider(StaticUserInfoProvider):
    """Records every batch lookup; can be told to fail."""

    def __init__(self, users: Mapping[str, Any] | None = None) -> None:
        super().__init__(users)
        self.calls: list[list[str]] = []
        self.broken = False

    def get_users_by_ids(self, ids: Sequence[str]):
        self.calls.append(list(ids))
        if self.broken:
            raise ConnectionError("user service down")
        return super().get_users_by_ids(ids)


@pytest.fixture()
def at() -> Callable[[float], datetime]:
    def _at(seconds: float) -> datetime:
        return BASE_TIME + timedelta(seconds=seconds)

    return _at


@pytest.fixture()
def settings() -> FeedStoreSettings:
    return FeedStoreSettings.create(
        backend="memory",
        embed_threshold=2,
        store_max_retries=3,
        store_retry_initial_delay=0.0,
        feed_default_page_size=2,
        feed_max_page_size=50,
    )


@pytest.fixture()
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture()
def users() -> SpyUserInfoProvider:
    return SpyUserInfoProvider(
        {
            "alice": AuthorInfo(id="alice", displayName="Alice", avatarUrl="https://cdn.example/alice.png"),
            "bob": {"displayName": "Bob"},
        }
    )


@pytest.fixture()
def app(settings: FeedStoreSettings, store: FlakyStore, users: SpyUserInfoProvider) -> FeedStoreApp:
    return build_app(settings, store=store, users=users)


@pytest.fixture()
def post_id(app: FeedStoreApp, at: Callable[[float], datetime]) -> str:
    return app.posts.create({"authorId": "alice", "caption": "Sunset at the pier", "createdAt": at(0)})
