from __future__ import annotations

from typing import Dict, Type

from pydantic import BaseModel

from .feed import AuthorInfo, FeedEntry, FeedFilter, FeedPage, PageRequest, PostSummary
from .posts import PostWithComments, RecountResult
from ..documents.comment_document_spec import Comment
from ..documents.post_document_spec import GeoPoint, MediaItem, Post


# Registry mapping output schema filenames to models for generation
SCHEMA_MODELS: Dict[str, Type[BaseModel]] = {
    "post.document.schema.json": Post,
    "comment.document.schema.json": Comment,
    "post.full.schema.json": PostWithComments,
    "feed.filter.schema.json": FeedFilter,
    "feed.page.request.schema.json": PageRequest,
    "feed.page.schema.json": FeedPage,
    "recount.result.schema.json": RecountResult,
}

__all__ = [
    "AuthorInfo",
    "Comment",
    "FeedEntry",
    "FeedFilter",
    "FeedPage",
    "GeoPoint",
    "MediaItem",
    "PageRequest",
    "Post",
    "PostSummary",
    "PostWithComments",
    "RecountResult",
    "SCHEMA_MODELS",
]
