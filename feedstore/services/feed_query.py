"""Paginated feed retrieval.

The feed pipeline is Match -> Project -> Sort -> Paginate, run inside the
document store, followed by one batched author lookup per page. Entries reuse
each post's maintained ``commentsCount``; comments are never reconstructed
for listings.
"""
from __future__ import annotations

import base64
import json
from typing import Dict, List, Optional, Tuple

from feedstore.services.base import StoreService
from feedstore.services.user_info import StaticUserInfoProvider, UserInfoProvider, UserRecord, to_author_info
from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import info as log_info, warning as log_warning
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.datetime_utils import format_iso_datetime
from feedstore.specs.common.enums import FeedSort
from feedstore.specs.common.errors import ValidationError
from feedstore.specs.common.query import Condition, Limit, Match, Project, Skip, Sort, SortKey, Stage, where
from feedstore.specs.models.feed import FeedEntry, FeedFilter, FeedPage, PageRequest, PostSummary

SUMMARY_FIELDS = [
    "id",
    "authorId",
    "caption",
    "tags",
    "media",
    "location",
    "likesCount",
    "commentsCount",
    "createdAt",
    "ttlAt",
]


def encode_cursor(created_at: str, post_id: str, sort: FeedSort) -> str:
    raw = json.dumps({"c": created_at, "i": post_id, "s": sort.value}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str, sort: FeedSort) -> Tuple[str, str]:
    """Return ``(createdAt, id)`` of the last entry of the previous page."""
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        created_at, post_id, cursor_sort = payload["c"], payload["i"], payload["s"]
    except (ValueError, KeyError, TypeError) as exc:
        raise ValidationError("Malformed feed cursor") from exc
    if not isinstance(created_at, str) or not isinstance(post_id, str):
        raise ValidationError("Malformed feed cursor")
    if cursor_sort != sort.value:
        raise ValidationError("Cursor was issued for a different sort order", details={"cursorSort": cursor_sort})
    return created_at, post_id


class FeedQueryEngine(StoreService):
    def __init__(
        self,
        store: DocumentStore,
        settings: FeedStoreSettings,
        users: Optional[UserInfoProvider] = None,
    ) -> None:
        super().__init__(store, settings)
        self._users: UserInfoProvider = users or StaticUserInfoProvider()

    def _page_size(self, page: PageRequest) -> int:
        limit = page.limit if page.limit is not None else self._settings.feed_default_page_size
        if not 1 <= limit <= self._settings.feed_max_page_size:
            raise ValidationError(
                f"Page size must be between 1 and {self._settings.feed_max_page_size}",
                details={"limit": limit},
            )
        return limit

    @staticmethod
    def _match(feed_filter: FeedFilter) -> List[Condition]:
        conditions: List[Condition] = []
        if feed_filter.since is not None:
            conditions.append(where("createdAt", "gte", format_iso_datetime(feed_filter.since)))
        if feed_filter.until is not None:
            conditions.append(where("createdAt", "lt", format_iso_datetime(feed_filter.until)))
        if feed_filter.tag:
            conditions.append(where("tags", "contains", feed_filter.tag))
        if feed_filter.text:
            conditions.append(where("caption", "substring", feed_filter.text))
        if feed_filter.authorId:
            conditions.append(where("authorId", "eq", feed_filter.authorId))
        if feed_filter.near is not None:
            conditions.append(where("location", "near", feed_filter.near))
        return conditions

    def build_pipeline(self, feed_filter: FeedFilter, sort: FeedSort, page: PageRequest) -> List[Stage]:
        """Translate a feed request into store pipeline stages.

        One row beyond the page size is requested so the caller can tell
        whether another page exists.
        """
        limit = self._page_size(page)
        if page.cursor and page.offset is not None:
            raise ValidationError("Use either a cursor or an offset, not both")

        descending = sort == FeedSort.NEWEST
        match = Match(conditions=self._match(feed_filter))
        if page.cursor:
            created_at, last_id = decode_cursor(page.cursor, sort)
            # Strictly after the last (createdAt, id) seen, in feed order
            match.anyOf = [
                [where("createdAt", "lt" if descending else "gt", created_at)],
                [where("createdAt", "eq", created_at), where("id", "gt", last_id)],
            ]

        stages: List[Stage] = [
            match,
            Sort(keys=[SortKey(field="createdAt", descending=descending), SortKey(field="id")]),
        ]
        if page.offset:
            stages.append(Skip(count=page.offset))
        stages.append(Limit(count=limit + 1))
        stages.append(Project(fields=SUMMARY_FIELDS))
        return stages

    def _lookup_authors(self, author_ids: List[str]) -> Dict[str, UserRecord]:
        if not author_ids:
            return {}
        try:
            return dict(self._users.get_users_by_ids(author_ids))
        except Exception as exc:
            # Best effort: a failing user service only blanks author info
            log_warning(None, "feed:authors_unavailable", error=str(exc), authors=len(author_ids))
            return {}

    def get_feed(
        self,
        feed_filter: Optional[FeedFilter] = None,
        sort: FeedSort = FeedSort.NEWEST,
        page: Optional[PageRequest] = None,
    ) -> FeedPage:
        """Return one page of feed entries.

        Cursor pagination (the default) never repeats or skips entries across
        pages. Offset pagination is available for convenience and may drift
        when posts are inserted between requests.

        Raises:
            ValidationError: Bad page size, malformed cursor, or both cursor and offset given.
        """
        feed_filter = feed_filter or FeedFilter()
        page = page or PageRequest()
        sort = FeedSort(sort)
        limit = self._page_size(page)
        stages = self.build_pipeline(feed_filter, sort, page)

        rows = self._call("feed.aggregate", self._store.aggregate, self._settings.posts_container, stages)
        has_more = len(rows) > limit
        rows = rows[:limit]

        author_ids = list(dict.fromkeys(row["authorId"] for row in rows if row.get("authorId")))
        users = self._lookup_authors(author_ids)
        entries = [
            FeedEntry(
                post=PostSummary.model_validate(row),
                commentsCount=int(row.get("commentsCount") or 0),
                author=to_author_info(row["authorId"], users.get(row["authorId"])),
            )
            for row in rows
        ]

        result = FeedPage(entries=entries, hasMore=has_more)
        if has_more and rows:
            if page.offset is not None:
                result.nextOffset = page.offset + len(rows)
            else:
                last = rows[-1]
                result.nextCursor = encode_cursor(last["createdAt"], last["id"], sort)
        log_info(
            None,
            "feed:page",
            returned=len(entries),
            hasMore=has_more,
            mode="offset" if page.offset is not None else "cursor",
            tag=feed_filter.tag,
        )
        return result

    def search(
        self,
        *,
        tag: Optional[str] = None,
        text: Optional[str] = None,
        sort: FeedSort = FeedSort.NEWEST,
        page: Optional[PageRequest] = None,
    ) -> FeedPage:
        """Tag and/or caption-text search, returned as an ordinary feed page."""
        if not tag and not text:
            raise ValidationError("Search needs a tag or a text term")
        return self.get_feed(FeedFilter(tag=tag, text=text), sort=sort, page=page)


__all__ = ["FeedQueryEngine", "SUMMARY_FIELDS", "encode_cursor", "decode_cursor"]
