import logging
import os
from typing import Any, Dict, Optional


_LOGGER = logging.getLogger("feedstore")


def configure_logging() -> None:
    lvl = (os.getenv("AZURE_SDK_LOG_LEVEL") or "").upper()
    if lvl:
        level = getattr(logging, lvl, logging.INFO)
        logging.getLogger("azure").setLevel(level)
        logging.getLogger("azure.cosmos").setLevel(level)
    own = (os.getenv("FEEDSTORE_LOG_LEVEL") or "INFO").upper()
    _LOGGER.setLevel(getattr(logging, own, logging.INFO))


def log(level: int, trace_id: Optional[str], message: str, **dimensions: Any) -> None:
    dims: Dict[str, Any] = {"traceId": trace_id} if trace_id else {}
    dims.update(dimensions)
    try:
        _LOGGER.log(level, message, extra={"custom_dimensions": dims})
    except Exception:
        # Fallback if extra/custom_dimensions not supported in the environment
        _LOGGER.log(level, f"{message} | {dims}")


def debug(trace_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.DEBUG, trace_id, message, **dimensions)


def info(trace_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.INFO, trace_id, message, **dimensions)


def warning(trace_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.WARNING, trace_id, message, **dimensions)


def error(trace_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.ERROR, trace_id, message, **dimensions)
