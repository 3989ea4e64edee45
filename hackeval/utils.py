"""Shared utility functions used across hackeval modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hackeval.models import Task

_MISSING = object()

# Undated tasks sort after every dated one.
_NO_DUE_DATE = datetime.max


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    return datetime.now(UTC)


def _naive(value: datetime | None) -> datetime:
    if value is None:
        return _NO_DUE_DATE
    return value.replace(tzinfo=None) if value.tzinfo else value


def task_sort_key(task: Task) -> tuple:
    """The one ordering for tasks inside a phase.

    ``order_index``, then due date (undated last), then title, then id.
    Every view that lists tasks sorts with this key.
    """
    return (
        task.order_index if task.order_index is not None else 0,
        _naive(task.due_date),
        (task.title or "").casefold(),
        task.id or 0,
    )


def submission_time(submission: Any) -> datetime:
    """Timestamp used to decide which submission is the most recent."""
    stamp = submission.submitted_at or submission.created_at
    return _naive(stamp) if stamp else datetime.min
