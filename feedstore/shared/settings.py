"""Environment-driven settings for the feed store."""
from __future__ import annotations

import os
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from feedstore.specs.common.errors import ValidationError


_TRUE = {"1", "true", "yes", "on"}


class FeedStoreSettings(BaseModel):
    embed_threshold: int = Field(20, ge=1, description="Max embedded comments before overflow")
    feed_default_page_size: int = Field(20, ge=1)
    feed_max_page_size: int = Field(100, ge=1)
    story_ttl_seconds: int = Field(86400, ge=1, description="Lifetime of ephemeral story posts")
    store_max_retries: int = Field(3, ge=1)
    store_retry_initial_delay: float = Field(0.1, ge=0)
    store_operation_timeout: float = Field(10.0, gt=0)
    repair_on_read: bool = True
    backend: Literal["auto", "memory", "cosmos"] = "auto"
    cosmos_connection_string: Optional[str] = None
    cosmos_database_name: Optional[str] = None
    posts_container: str = "posts"
    comments_container: str = "comments"
    state_file: Optional[str] = Field(None, description="JSON file backing the memory store")

    @model_validator(mode="after")
    def _check_page_bounds(self) -> "FeedStoreSettings":
        if self.feed_default_page_size > self.feed_max_page_size:
            raise ValueError("feed_default_page_size exceeds feed_max_page_size")
        return self

    @property
    def cosmos_configured(self) -> bool:
        return bool(self.cosmos_connection_string and self.cosmos_database_name)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeedStoreSettings":
        """Build settings from environment variables, falling back to defaults.

        Raises:
            ValidationError: If a variable holds an unusable value.
        """
        env = os.environ if environ is None else environ
        mapping = {
            "embed_threshold": "EMBED_THRESHOLD",
            "feed_default_page_size": "FEED_DEFAULT_PAGE_SIZE",
            "feed_max_page_size": "FEED_MAX_PAGE_SIZE",
            "story_ttl_seconds": "STORY_TTL_SECONDS",
            "store_max_retries": "STORE_MAX_RETRIES",
            "store_retry_initial_delay": "STORE_RETRY_INITIAL_DELAY",
            "store_operation_timeout": "STORE_OPERATION_TIMEOUT",
            "backend": "FEEDSTORE_BACKEND",
            "cosmos_connection_string": "COSMOS_DB_CONNECTION_STRING",
            "cosmos_database_name": "COSMOS_DB_NAME",
            "posts_container": "COSMOS_DB_CONTAINER_POSTS",
            "comments_container": "COSMOS_DB_CONTAINER_COMMENTS",
            "state_file": "FEEDSTORE_STATE_FILE",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        if "backend" in values:
            values["backend"] = values["backend"].lower()
        repair = env.get("REPAIR_ON_READ")
        if repair:
            values["repair_on_read"] = repair.strip().lower() in _TRUE
        return cls.create(**values)

    @classmethod
    def create(cls, **values) -> "FeedStoreSettings":
        try:
            return cls(**values)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid feed store configuration",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
