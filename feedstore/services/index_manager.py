"""Declarative index and TTL setup, run once at startup."""
from __future__ import annotations

from typing import Dict, List

from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import info as log_info
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.enums import IndexKind
from feedstore.specs.common.index_spec import IndexField, IndexSpec

TTL_FIELD = "ttlAt"


def post_indexes() -> List[IndexSpec]:
    return [
        IndexSpec(name="author", kind=IndexKind.RANGE, fields=[IndexField(path="authorId")],
                  description="Author timelines"),
        IndexSpec(name="tags", kind=IndexKind.MULTIKEY, fields=[IndexField(path="tags")],
                  description="Tag membership search"),
        IndexSpec(name="created", kind=IndexKind.RANGE, fields=[IndexField(path="createdAt")],
                  description="Recency windows"),
        IndexSpec(name="location", kind=IndexKind.GEO, fields=[IndexField(path="location")],
                  description="Nearby posts"),
        IndexSpec(
            name="feed_newest",
            kind=IndexKind.COMPOSITE,
            fields=[IndexField(path="createdAt", descending=True), IndexField(path="id")],
            description="Newest-first feed with id tie-break",
        ),
        IndexSpec(
            name="feed_oldest",
            kind=IndexKind.COMPOSITE,
            fields=[IndexField(path="createdAt"), IndexField(path="id")],
            description="Oldest-first feed with id tie-break",
        ),
    ]


def comment_indexes() -> List[IndexSpec]:
    return [
        IndexSpec(
            name="thread_order",
            kind=IndexKind.COMPOSITE,
            fields=[IndexField(path="postId"), IndexField(path="createdAt"), IndexField(path="id")],
            description="Overflow comments of a post in (createdAt, id) order",
        ),
    ]


class IndexManager:
    def __init__(self, store: DocumentStore, settings: FeedStoreSettings) -> None:
        self._store = store
        self._settings = settings

    def declarations(self) -> Dict[str, List[IndexSpec]]:
        return {
            self._settings.posts_container: post_indexes(),
            self._settings.comments_container: comment_indexes(),
        }

    def ensure(self) -> Dict[str, List[IndexSpec]]:
        """Declare every index plus the story TTL; safe to run on every start."""
        declared = self.declarations()
        for collection, specs in declared.items():
            self._store.create_indexes(collection, specs)
            log_info(None, "indexes:ensure", collection=collection, indexes=[s.name for s in specs])
        # Overflow comments carry their story's ttlAt, so both containers expire on it
        for collection in (self._settings.posts_container, self._settings.comments_container):
            self._store.set_ttl(collection, TTL_FIELD)
            log_info(None, "indexes:ttl", collection=collection, field=TTL_FIELD)
        return declared


__all__ = ["IndexManager", "post_indexes", "comment_indexes", "TTL_FIELD"]
