"""CRUD over the Post aggregate root."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from feedstore.services.base import StoreService, coerce_model
from feedstore.services.comment_overflow import CommentOverflowManager
from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import info as log_info, warning as log_warning
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.datetime_utils import utc_now
from feedstore.specs.common.enums import CommentLocation
from feedstore.specs.common.errors import ConflictError, ConsistencyDriftError, FeedStoreError, ValidationError
from feedstore.specs.common.ids import new_id, validate_id
from feedstore.specs.documents.comment_document_spec import Comment
from feedstore.specs.documents.post_document_spec import Post
from feedstore.specs.models.posts import PostWithComments, RecountResult

# Maintained by the store itself; callers may never set these through patch
MANAGED_FIELDS = frozenset(
    {"id", "createdAt", "embeddedComments", "commentsCount", "likedBy", "likesCount", "extraFields", "ttl"}
)

PostInput = Union[Post, Mapping[str, Any]]


class PostRepository(StoreService):
    def __init__(
        self,
        store: DocumentStore,
        settings: FeedStoreSettings,
        comments: Optional[CommentOverflowManager] = None,
    ) -> None:
        super().__init__(store, settings)
        self._comment_manager = comments or CommentOverflowManager(store, settings)

    @property
    def _posts(self) -> str:
        return self._settings.posts_container

    # ── create / read ───────────────────────────────────────────────────

    def create(self, post: PostInput) -> str:
        """Persist a new post and return its id.

        ``id`` and ``createdAt`` are assigned when absent. Any embedded
        comments supplied up front count towards ``commentsCount``; likes
        always start empty.

        Raises:
            ValidationError: Malformed id or more embedded comments than the threshold.
            ConflictError: A post with the same id already exists.
        """
        prepared = coerce_model(Post, post, "post")
        prepared.id = validate_id(prepared.id, "post id") if prepared.id else new_id()
        if prepared.createdAt is None:
            prepared.createdAt = utc_now()

        threshold = self._settings.embed_threshold
        if len(prepared.embeddedComments) > threshold:
            raise ValidationError(
                f"At most {threshold} embedded comments allowed at creation",
                details={"embedded": len(prepared.embeddedComments), "threshold": threshold},
            )
        for comment in prepared.embeddedComments:
            comment.id = validate_id(comment.id, "comment id") if comment.id else new_id()
            comment.postId = prepared.id
            comment.createdAt = comment.createdAt or prepared.createdAt
            comment.location = CommentLocation.EMBEDDED

        prepared.commentsCount = len(prepared.embeddedComments)
        prepared.likedBy = []
        prepared.likesCount = 0

        created = self._call(
            "posts.create", self._store.put, self._posts, prepared.id, prepared.to_document(), overwrite=False
        )
        if not created:
            raise ConflictError("post", prepared.id)
        log_info(
            prepared.id,
            "posts:create",
            authorId=prepared.authorId,
            embedded=prepared.commentsCount,
            story=prepared.ttlAt is not None,
        )
        return prepared.id

    def create_story(self, post: PostInput, ttl_seconds: Optional[int] = None) -> str:
        """Create an ephemeral post that expires after ``ttl_seconds`` (default: STORY_TTL_SECONDS)."""
        prepared = coerce_model(Post, post, "post")
        seconds = ttl_seconds if ttl_seconds is not None else self._settings.story_ttl_seconds
        if seconds <= 0:
            raise ValidationError("Story TTL must be positive", details={"ttlSeconds": seconds})
        if prepared.createdAt is None:
            prepared.createdAt = utc_now()
        prepared.ttlAt = prepared.createdAt + timedelta(seconds=seconds)
        return self.create(prepared)

    def get(self, post_id: str) -> Post:
        """Fetch the post document alone (embedded comments only, no overflow lookup)."""
        validate_id(post_id, "post id")
        return Post.model_validate(self._call("posts.read", self._store.get, self._posts, post_id))

    def get_full(self, post_id: str) -> PostWithComments:
        """Fetch a post with its complete comment list stitched in.

        If only the overflow lookup fails the post is still returned, with the
        embedded comments and ``commentsAvailable=False``.
        """
        validate_id(post_id, "post id")
        document = self._call("posts.read", self._store.get, self._posts, post_id)
        post = Post.model_validate(document)
        comments, available = self._comment_manager.load_thread(document)
        if available:
            try:
                self._comment_manager.check_thread(document, comments)
            except ConsistencyDriftError as drift:
                log_warning(post_id, "posts:get_full:drift", stored=drift.stored, actual=drift.actual)
                if self._settings.repair_on_read:
                    post.commentsCount = self._repair_quietly(post_id, fallback=post.commentsCount)
        return PostWithComments(post=post, comments=comments, commentsAvailable=available)

    def _repair_quietly(self, post_id: str, fallback: int) -> int:
        try:
            return self._comment_manager.repair_comment_count(post_id).actual
        except FeedStoreError as exc:
            log_warning(post_id, "posts:get_full:repair_failed", error=str(exc))
            return fallback

    # ── updates ─────────────────────────────────────────────────────────

    def patch(self, post_id: str, fields: Mapping[str, Any]) -> Post:
        """Merge ``fields`` into the stored post.

        Known fields are validated against their declared types; unknown keys
        are stored verbatim, which is how new fields are added without a
        migration.
        """
        validate_id(post_id, "post id")
        fields = dict(fields)
        managed = sorted(MANAGED_FIELDS.intersection(fields))
        if managed:
            raise ValidationError("Cannot patch server-managed fields", details={"fields": managed})
        if not fields:
            return self.get(post_id)

        known = {k: v for k, v in fields.items() if k in Post.model_fields}
        update: Dict[str, Any] = {k: v for k, v in fields.items() if k not in known}
        if known:
            # Validate typed fields through the model so they serialise exactly like on create
            candidate = coerce_model(Post, {"authorId": "patch", **known}, "post patch")
            candidate_doc = candidate.to_document()
            update.update({k: candidate_doc.get(k) for k in known})

        updated = self._call("posts.patch", self._store.patch, self._posts, post_id, update)
        log_info(post_id, "posts:patch", fields=sorted(update))
        return Post.model_validate(updated)

    def delete(self, post_id: str) -> None:
        """Delete a post and cascade to its overflow comments.

        Raises:
            NotFoundError: The post does not exist.
        """
        validate_id(post_id, "post id")
        self._call("posts.read", self._store.get, self._posts, post_id)
        removed = self._comment_manager.delete_all_for_post(post_id)
        self._call("posts.delete", self._store.delete, self._posts, post_id)
        log_info(post_id, "posts:delete", overflowRemoved=removed)

    def increment_likes(self, post_id: str, user_id: str) -> bool:
        """Record a like; returns False (and changes nothing) if the user already liked the post."""
        validate_id(post_id, "post id")
        validate_id(user_id, "user id")
        added = self._call(
            "posts.like",
            self._store.add_to_set,
            self._posts,
            post_id,
            "likedBy",
            user_id,
            increments={"likesCount": 1},
        )
        log_info(post_id, "posts:like", userId=user_id, added=added)
        return added

    def remove_like(self, post_id: str, user_id: str) -> bool:
        """Withdraw a like; returns False (and changes nothing) if the user had not liked the post."""
        validate_id(post_id, "post id")
        validate_id(user_id, "user id")
        removed = self._call(
            "posts.unlike",
            self._store.remove_from_set,
            self._posts,
            post_id,
            "likedBy",
            user_id,
            increments={"likesCount": -1},
        )
        log_info(post_id, "posts:unlike", userId=user_id, removed=removed)
        return removed

    # ── comments ────────────────────────────────────────────────────────

    def add_comment(self, post_id: str, comment: Union[Comment, Mapping[str, Any]]) -> Comment:
        return self._comment_manager.append_comment(post_id, comment)

    def delete_comment(self, post_id: str, comment_id: str) -> CommentLocation:
        return self._comment_manager.delete_comment(post_id, comment_id)

    def comments(self, post_id: str) -> List[Comment]:
        return self._comment_manager.reconstruct_comments(post_id)

    def repair_comments_count(self, post_id: str) -> RecountResult:
        return self._comment_manager.repair_comment_count(post_id)


__all__ = ["PostRepository", "MANAGED_FIELDS"]
