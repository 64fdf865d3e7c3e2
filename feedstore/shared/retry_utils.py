from typing import Callable, TypeVar

import backoff

from feedstore.shared.logging_utils import warning as log_warning
from feedstore.specs.common.errors import TransientStoreError, UnavailableError

T = TypeVar("T")


def _log_backoff(details: dict) -> None:
    log_warning(
        None,
        "store:retry:backoff",
        operation=details.get("kwargs", {}).get("_op_name"),
        tries=details.get("tries"),
        waitSeconds=round(details.get("wait") or 0.0, 3),
    )


def call_with_retry(
    operation: Callable[[], T],
    *,
    op_name: str,
    max_tries: int = 3,
    max_time: float = 10.0,
    initial_delay: float = 0.1,
    max_delay: float = 2.0,
) -> T:
    """Run a store call with exponential backoff on transient failures.

    Only ``TransientStoreError`` is retried. Once attempts or time run out the
    failure surfaces as ``UnavailableError``; every other error propagates
    unchanged on the first occurrence.
    """

    @backoff.on_exception(
        backoff.expo,
        TransientStoreError,
        max_tries=max_tries,
        max_time=max_time,
        on_backoff=_log_backoff,
        logger=None,
        factor=initial_delay,
        max_value=max_delay,
    )
    def _run(_op_name: str) -> T:
        return operation()

    try:
        return _run(_op_name=op_name)
    except TransientStoreError as exc:
        raise UnavailableError(op_name, details={"cause": str(exc)}) from exc
