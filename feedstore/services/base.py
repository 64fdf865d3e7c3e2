from __future__ import annotations

from typing import Any, Callable, Mapping, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from feedstore.shared.document_store import DocumentStore
from feedstore.shared.retry_utils import call_with_retry
from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.errors import ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class StoreService:
    """Base class for components that talk to the document store.

    Every store call goes through :meth:`_call`, which applies the configured
    retry-with-backoff policy for transient failures.
    """

    def __init__(self, store: DocumentStore, settings: FeedStoreSettings) -> None:
        self._store = store
        self._settings = settings

    @property
    def settings(self) -> FeedStoreSettings:
        return self._settings

    def _call(self, op_name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return call_with_retry(
            lambda: fn(*args, **kwargs),
            op_name=op_name,
            max_tries=self._settings.store_max_retries,
            max_time=self._settings.store_operation_timeout,
            initial_delay=self._settings.store_retry_initial_delay,
        )


def coerce_model(model: Type[M], value: Any, kind: str) -> M:
    """Accept a model instance or a plain mapping; map pydantic errors to ValidationError."""
    if isinstance(value, model):
        return value.model_copy(deep=True)
    if not isinstance(value, Mapping):
        raise ValidationError(f"Expected a {kind} mapping, got {type(value).__name__}")
    try:
        return model.model_validate(dict(value))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {kind}",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


__all__ = ["StoreService", "coerce_model"]
