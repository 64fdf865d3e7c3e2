"""Composition root: settings, store and services wired together."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from feedstore.services.comment_overflow import CommentOverflowManager
from feedstore.services.feed_query import FeedQueryEngine
from feedstore.services.index_manager import IndexManager
from feedstore.services.post_repository import PostRepository
from feedstore.services.user_info import UserInfoProvider
from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import configure_logging
from feedstore.shared.settings import FeedStoreSettings
from feedstore.shared.store_factory import get_document_store


@dataclass
class FeedStoreApp:
    settings: FeedStoreSettings
    store: DocumentStore
    comments: CommentOverflowManager
    posts: PostRepository
    feed: FeedQueryEngine
    indexes: IndexManager


def build_app(
    settings: Optional[FeedStoreSettings] = None,
    *,
    store: Optional[DocumentStore] = None,
    users: Optional[UserInfoProvider] = None,
    ensure_indexes: bool = True,
) -> FeedStoreApp:
    configure_logging()
    settings = settings or FeedStoreSettings.from_env()
    store = store or get_document_store(settings)
    comments = CommentOverflowManager(store, settings)
    indexes = IndexManager(store, settings)
    if ensure_indexes:
        indexes.ensure()
    return FeedStoreApp(
        settings=settings,
        store=store,
        comments=comments,
        posts=PostRepository(store, settings, comments),
        feed=FeedQueryEngine(store, settings, users),
        indexes=indexes,
    )
