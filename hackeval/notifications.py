"""Fire-and-forget hooks called after a final evaluation is committed.

Delivery (email, in-app) lives elsewhere; it plugs in with
:func:`register_listener`. A failing listener is logged and skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from hackeval.models import Evaluation

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalEvaluationNotice:
    evaluation_id: int
    tenant_id: int
    evaluation_scope: str
    target_key: str
    team_id: int | None
    submission_id: int | None
    reviewer_id: int
    score: Decimal | None

    @classmethod
    def from_evaluation(cls, evaluation: Evaluation) -> FinalEvaluationNotice:
        return cls(
            evaluation_id=evaluation.id,
            tenant_id=evaluation.tenant_id,
            evaluation_scope=evaluation.evaluation_scope,
            target_key=evaluation.target_key,
            team_id=evaluation.team_id,
            submission_id=evaluation.submission_id,
            reviewer_id=evaluation.reviewer_id,
            score=evaluation.score,
        )


Listener = Callable[[FinalEvaluationNotice], None]

_listeners: list[Listener] = []


def register_listener(listener: Listener) -> Listener:
    """Register ``listener``; usable as a decorator."""
    if listener not in _listeners:
        _listeners.append(listener)
    return listener


def unregister_listener(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def dispatch_final_evaluation(notice: FinalEvaluationNotice) -> int:
    """Call every listener with ``notice``. Returns how many succeeded."""
    delivered = 0
    for listener in list(_listeners):
        try:
            listener(notice)
            delivered += 1
        except Exception as exc:
            log.warning("Notification listener %r failed for evaluation %s: %s",
                        listener, notice.evaluation_id, exc, exc_info=True)
    log.debug("Final evaluation %s notified to %d listener(s)", notice.evaluation_id, delivered)
    return delivered
