"""Shared utility functions used across leadscout modules."""
from __future__ import annotations

import json
import logging
from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value, default=str)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def log_progress(logger: logging.Logger, current: int, total: int, operation: str) -> None:
    """Log ``operation: current/total (pct%)`` at INFO level."""
    pct = round(current / total * 100) if total > 0 else 0
    logger.info("%s: %d/%d (%d%%)", operation, current, total, pct)
