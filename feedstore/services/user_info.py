"""Read-only access to author profiles owned by an external user service."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Union

from feedstore.shared.document_store import DocumentStore
from feedstore.specs.common.query import Project, where, build_find_pipeline
from feedstore.specs.models.feed import AuthorInfo

UserRecord = Union[AuthorInfo, Mapping[str, Any]]


class UserInfoProvider(Protocol):
    def get_users_by_ids(self, ids: Sequence[str]) -> Mapping[str, UserRecord]:
        """Return known users keyed by id; unknown ids are simply absent."""
        ...


class StaticUserInfoProvider:
    """Mapping-backed provider for local runs and tests."""

    def __init__(self, users: Optional[Mapping[str, UserRecord]] = None) -> None:
        self._users: Dict[str, UserRecord] = dict(users or {})

    def add(self, user_id: str, display_name: str, avatar_url: Optional[str] = None) -> None:
        self._users[user_id] = AuthorInfo(id=user_id, displayName=display_name, avatarUrl=avatar_url)

    def get_users_by_ids(self, ids: Sequence[str]) -> Mapping[str, UserRecord]:
        return {i: self._users[i] for i in ids if i in self._users}


class DocumentUserInfoProvider:
    """Looks profiles up in a ``users`` collection of a document store, one query per batch."""

    FIELDS = ["id", "displayName", "avatarUrl"]

    def __init__(self, store: DocumentStore, collection: str = "users") -> None:
        self._store = store
        self._collection = collection

    def get_users_by_ids(self, ids: Sequence[str]) -> Mapping[str, UserRecord]:
        if not ids:
            return {}
        stages = build_find_pipeline([where("id", "in", list(ids))]) + [Project(fields=self.FIELDS)]
        rows = self._store.aggregate(self._collection, stages)
        return {row["id"]: AuthorInfo.model_validate(row) for row in rows}


def to_author_info(author_id: str, record: Optional[UserRecord]) -> Optional[AuthorInfo]:
    if record is None:
        return None
    if isinstance(record, AuthorInfo):
        return record
    return AuthorInfo.model_validate({**dict(record), "id": author_id})


__all__ = ["UserInfoProvider", "StaticUserInfoProvider", "DocumentUserInfoProvider", "to_author_info"]
