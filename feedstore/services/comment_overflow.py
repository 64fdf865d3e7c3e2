"""Placement and reassembly of a post's hybrid comment collection.

The first ``embed_threshold`` comments of a post live inline in the post
document (``embeddedComments``); every later comment is written to the
comments container, partitioned by ``postId``. Reads stitch both sources
back together ordered by ``(createdAt, id)``.

Placement rules:

* the threshold is checked against the embedded array length only, never
  against ``commentsCount``;
* once a post spilled into overflow nothing is ever moved back, not even
  after embedded comments are deleted;
* concurrent appends may both see a free slot and both embed, so the
  embedded length can exceed the threshold by (writers - 1).
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from feedstore.services.base import StoreService, coerce_model
from feedstore.shared.logging_utils import error as log_error, info as log_info, warning as log_warning
from feedstore.specs.common.datetime_utils import parse_iso_datetime, utc_now
from feedstore.specs.common.enums import CommentLocation
from feedstore.specs.common.errors import (
    ConsistencyDriftError,
    FeedStoreError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from feedstore.specs.common.ids import new_id, validate_id
from feedstore.specs.common.query import SortKey, where
from feedstore.specs.documents.comment_document_spec import Comment
from feedstore.specs.models.posts import RecountResult

EMBEDDED_FIELD = "embeddedComments"
COUNT_FIELD = "commentsCount"
COMMENT_ORDER = [SortKey(field="createdAt"), SortKey(field="id")]


def merge_comments(embedded: Iterable[Comment], overflow: Iterable[Comment]) -> List[Comment]:
    """Union of both sources in canonical order; an id seen in both keeps the embedded copy."""
    merged: Dict[str, Comment] = {}
    for comment in embedded:
        merged.setdefault(comment.id or "", comment)
    for comment in overflow:
        merged.setdefault(comment.id or "", comment)
    return sorted(merged.values(), key=Comment.sort_key)


class CommentOverflowManager(StoreService):

    @property
    def _posts(self) -> str:
        return self._settings.posts_container

    @property
    def _comments(self) -> str:
        return self._settings.comments_container

    # ── writes ──────────────────────────────────────────────────────────

    def _prepare(self, post_id: str, comment: Union[Comment, Mapping[str, Any]]) -> Comment:
        prepared = coerce_model(Comment, comment, "comment")
        if prepared.postId is not None and prepared.postId != post_id:
            raise ValidationError(
                "Comment belongs to a different post",
                details={"postId": post_id, "commentPostId": prepared.postId},
            )
        prepared.postId = post_id
        prepared.id = validate_id(prepared.id, "comment id") if prepared.id else new_id()
        if prepared.createdAt is None:
            prepared.createdAt = utc_now()
        prepared.location = None
        prepared.ttlAt = None
        return prepared

    def append_comment(self, post_id: str, comment: Union[Comment, Mapping[str, Any]]) -> Comment:
        """Store a new comment either inline or in the overflow container.

        Retrying with the same comment id is safe: an id already present in
        overflow is answered from there before any slot is considered, so a
        retry never lands in both places and nothing is counted twice.

        Overflow records inherit the post's ``ttlAt`` so a story's comments
        expire together with it.

        Raises:
            NotFoundError: The post does not exist (or vanished mid-append).
            ValidationError: Malformed ids or comment payload.
            UnavailableError: The store kept failing; nothing was stored.
        """
        validate_id(post_id, "post id")
        if isinstance(comment, Comment):
            caller_id = comment.id
        else:
            caller_id = comment.get("id") if isinstance(comment, Mapping) else None
        prepared = self._prepare(post_id, comment)
        threshold = self._settings.embed_threshold

        if caller_id:
            existing = self._overflow_copy(post_id, prepared.id)
            if existing is not None:
                log_info(post_id, "comments:append:duplicate", commentId=prepared.id, location="overflow")
                return existing

        embedded = self._call("comments.embedded_count", self._store.array_length, self._posts, post_id, EMBEDDED_FIELD)
        if embedded < threshold:
            prepared.location = CommentLocation.EMBEDDED
            appended = self._call(
                "comments.append_embedded",
                self._store.append_to_array,
                self._posts,
                post_id,
                EMBEDDED_FIELD,
                prepared.to_document(),
                increments={COUNT_FIELD: 1},
                unique_key="id",
            )
            log_info(
                post_id,
                "comments:append:embedded",
                commentId=prepared.id,
                embeddedBefore=embedded,
                duplicate=not appended,
            )
            return prepared

        post_document = self._call("posts.read", self._store.get, self._posts, post_id)
        if caller_id and any(c.get("id") == prepared.id for c in post_document.get(EMBEDDED_FIELD) or []):
            # Retry of an append that already landed inline before the array filled up
            log_info(post_id, "comments:append:duplicate", commentId=prepared.id, location="embedded")
            prepared.location = CommentLocation.EMBEDDED
            return prepared

        prepared.location = CommentLocation.OVERFLOW
        expires = post_document.get("ttlAt")
        prepared.ttlAt = parse_iso_datetime(expires) if expires else None
        created = self._call(
            "comments.write_overflow",
            self._store.put,
            self._comments,
            prepared.id,
            prepared.to_document(),
            partition_key=post_id,
            overwrite=False,
        )
        if not created:
            log_info(post_id, "comments:append:duplicate", commentId=prepared.id, location="overflow")
            return prepared

        try:
            self._call("comments.count_overflow", self._store.increment, self._posts, post_id, COUNT_FIELD, 1)
        except NotFoundError:
            # Post deleted between the overflow write and the count bump
            self._discard_orphan(post_id, prepared.id)
            raise
        except UnavailableError as exc:
            # The comment is durable; the count catches up on the next recount
            log_warning(
                post_id,
                "comments:append:count_lagging",
                commentId=prepared.id,
                error=str(exc),
            )
        else:
            log_info(post_id, "comments:append:overflow", commentId=prepared.id, embedded=embedded)
        return prepared

    def _overflow_copy(self, post_id: str, comment_id: str) -> Optional[Comment]:
        try:
            doc = self._call("comments.read_overflow", self._store.get, self._comments, comment_id, partition_key=post_id)
        except NotFoundError:
            return None
        if doc.get("postId") != post_id:
            return None
        existing = Comment.model_validate(doc)
        existing.location = CommentLocation.OVERFLOW
        return existing

    def _discard_orphan(self, post_id: str, comment_id: str) -> None:
        try:
            self._call("comments.discard_orphan", self._store.delete, self._comments, comment_id, partition_key=post_id)
        except FeedStoreError as exc:
            log_error(post_id, "comments:append:orphan_left", commentId=comment_id, error=str(exc))

    def delete_comment(self, post_id: str, comment_id: str) -> CommentLocation:
        """Delete one comment and decrement ``commentsCount``.

        Freed embedded slots are not refilled from overflow.

        Returns:
            Where the comment was stored.

        Raises:
            NotFoundError: Neither the post's embedded slice nor the overflow
                container holds the comment.
        """
        validate_id(post_id, "post id")
        validate_id(comment_id, "comment id")
        removed = self._call(
            "comments.remove_embedded",
            self._store.remove_from_array,
            self._posts,
            post_id,
            EMBEDDED_FIELD,
            "id",
            comment_id,
            increments={COUNT_FIELD: -1},
        )
        if removed:
            log_info(post_id, "comments:delete:embedded", commentId=comment_id)
            return CommentLocation.EMBEDDED

        try:
            doc = self._call("comments.read_overflow", self._store.get, self._comments, comment_id, partition_key=post_id)
        except NotFoundError:
            raise NotFoundError("comment", comment_id, details={"postId": post_id}) from None
        if doc.get("postId") != post_id:
            raise NotFoundError("comment", comment_id, details={"postId": post_id})
        if not self._call("comments.delete_overflow", self._store.delete, self._comments, comment_id, partition_key=post_id):
            raise NotFoundError("comment", comment_id, details={"postId": post_id})
        self._call("comments.uncount_overflow", self._store.increment, self._posts, post_id, COUNT_FIELD, -1)
        log_info(post_id, "comments:delete:overflow", commentId=comment_id)
        return CommentLocation.OVERFLOW

    def delete_all_for_post(self, post_id: str) -> int:
        """Cascade: remove every overflow comment keyed by ``post_id``."""
        removed = self._call(
            "comments.delete_all",
            self._store.delete_many,
            self._comments,
            [where("postId", "eq", post_id)],
            partition_key=post_id,
        )
        log_info(post_id, "comments:cascade_delete", removed=removed)
        return removed

    # ── reads ───────────────────────────────────────────────────────────

    def load_thread(self, post_document: Mapping[str, Any], *, strict: bool = False) -> Tuple[List[Comment], bool]:
        """Stitch a post document's embedded comments with its overflow comments.

        Returns the ordered comments and whether the overflow part could be
        read. With ``strict`` off an unavailable overflow container degrades
        to the embedded slice instead of raising.
        """
        post_id = post_document["id"]
        embedded = [
            Comment.model_validate({**c, "postId": c.get("postId") or post_id, "location": CommentLocation.EMBEDDED})
            for c in post_document.get(EMBEDDED_FIELD) or []
        ]
        try:
            rows = self._call(
                "comments.read_overflow",
                self._store.find_many,
                self._comments,
                [where("postId", "eq", post_id)],
                sort=COMMENT_ORDER,
                partition_key=post_id,
            )
        except UnavailableError as exc:
            if strict:
                raise
            log_warning(post_id, "comments:overflow_unavailable", error=str(exc))
            return merge_comments(embedded, []), False
        overflow = [Comment.model_validate({**row, "location": CommentLocation.OVERFLOW}) for row in rows]
        return merge_comments(embedded, overflow), True

    def reconstruct_comments(self, post_id: str) -> List[Comment]:
        """Full ordered comment list; empty (not an error) when the post is gone."""
        validate_id(post_id, "post id")
        try:
            post_document = self._call("posts.read", self._store.get, self._posts, post_id)
        except NotFoundError:
            return []
        comments, _ = self.load_thread(post_document, strict=True)
        return comments

    # ── consistency ─────────────────────────────────────────────────────

    @staticmethod
    def check_thread(post_document: Mapping[str, Any], comments: List[Comment]) -> None:
        stored = int(post_document.get(COUNT_FIELD) or 0)
        if stored != len(comments):
            raise ConsistencyDriftError(post_document["id"], stored, len(comments))

    def verify_count(self, post_id: str) -> int:
        """Return the comment total, raising ConsistencyDriftError if the stored count disagrees."""
        post_document = self._call("posts.read", self._store.get, self._posts, post_id)
        comments, _ = self.load_thread(post_document, strict=True)
        self.check_thread(post_document, comments)
        return len(comments)

    def repair_comment_count(self, post_id: str) -> RecountResult:
        """Recount a post's comments from both stores and fix ``commentsCount``.

        The fix is applied as an atomic relative increment, so appends racing
        with the repair keep their own increments. Running it again on a
        quiescent post changes nothing.
        """
        validate_id(post_id, "post id")
        post_document = self._call("posts.read", self._store.get, self._posts, post_id)
        comments, _ = self.load_thread(post_document, strict=True)
        try:
            self.check_thread(post_document, comments)
        except ConsistencyDriftError as drift:
            log_warning(post_id, "comments:recount:drift", stored=drift.stored, actual=drift.actual)
            self._call(
                "comments.repair_count",
                self._store.increment,
                self._posts,
                post_id,
                COUNT_FIELD,
                drift.actual - drift.stored,
            )
            return RecountResult(postId=post_id, stored=drift.stored, actual=drift.actual, repaired=True)
        return RecountResult(postId=post_id, stored=len(comments), actual=len(comments), repaired=False)


__all__ = ["CommentOverflowManager", "merge_comments", "COMMENT_ORDER"]
