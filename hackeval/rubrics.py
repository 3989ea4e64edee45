"""Rubric catalog: per-phase and per-project rubrics with weighted criteria.

Evaluations never reference a rubric row directly. They embed a
:class:`~hackeval.schemas.RubricSnapshot` taken at write time, so criteria can
be edited or deleted freely without moving historical scores.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from hackeval import errors
from hackeval.models import Event, Phase, PhaseRubric, RubricCriterion, Task
from hackeval.schemas import CriterionIn, CriterionSnapshot, RubricSnapshot

if TYPE_CHECKING:
    from hackeval.scopes import ResolvedTarget

log = logging.getLogger(__name__)

DEFAULT_WEIGHT = Decimal("1.00")
# Scores, weights and max scores are stored as NUMERIC(5, 2).
SCORE_LIMIT = 999


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _latest(session: Session, *conditions) -> PhaseRubric | None:
    return session.execute(
        select(PhaseRubric).where(*conditions)
        .order_by(PhaseRubric.created_at.desc(), PhaseRubric.id.desc())
    ).scalars().first()


def get_rubric_for(
    session: Session, event_id: int, phase_id: int, task_id: int | None = None,
) -> PhaseRubric | None:
    """Rubric that applies to a task (or a whole phase when ``task_id`` is None).

    A rubric linked from the task wins; otherwise the newest phase-scope
    rubric bound to the phase; otherwise None.
    """
    if task_id is not None:
        task = session.get(Task, task_id)
        if task is not None and task.phase_rubric_id is not None:
            rubric = session.get(PhaseRubric, task.phase_rubric_id)
            if rubric is not None and rubric.event_id == event_id:
                return rubric
    return _latest(
        session,
        PhaseRubric.event_id == event_id,
        PhaseRubric.phase_id == phase_id,
        PhaseRubric.rubric_scope == "phase",
    )


def get_project_rubric(session: Session, event_id: int) -> PhaseRubric | None:
    return _latest(
        session,
        PhaseRubric.event_id == event_id,
        PhaseRubric.rubric_scope == "project",
    )


def rubric_for_target(session: Session, resolved: ResolvedTarget) -> PhaseRubric | None:
    if resolved.scope == "project":
        return get_project_rubric(session, resolved.event_id)
    return get_rubric_for(session, resolved.event_id, resolved.phase_id, resolved.task_id)


def list_rubrics(session: Session, event_id: int, phase_id: int | None = None) -> list[PhaseRubric]:
    query = select(PhaseRubric).where(PhaseRubric.event_id == event_id)
    if phase_id is not None:
        query = query.where(PhaseRubric.phase_id == phase_id)
    return list(session.execute(
        query.order_by(PhaseRubric.created_at.desc(), PhaseRubric.id.desc())
    ).scalars().all())


def sorted_criteria(rubric: PhaseRubric) -> list[RubricCriterion]:
    return sorted(rubric.criteria, key=lambda c: (c.order_index, c.id or 0))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _decimal(value: Any, field: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise errors.ValidationError(f"{field} must be a number") from exc


def normalize_criteria(criteria: Iterable[CriterionIn | Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Fill defaults and check weights, max scores and ordering.

    Missing ``weight`` becomes 1.00, missing ``order_index`` becomes the
    1-based position, missing ``max_score`` stays None.
    """
    normalized: list[dict[str, Any]] = []
    seen_orders: set[int] = set()
    for index, raw in enumerate(criteria):
        item = raw.model_dump() if isinstance(raw, CriterionIn) else dict(raw)
        title = str(item.get("title") or "").strip()
        if not title:
            raise errors.ValidationError(f"Criterion {index + 1} needs a title")
        weight = _decimal(item.get("weight"), "weight")
        weight = DEFAULT_WEIGHT if weight is None else weight
        if weight <= 0 or weight > SCORE_LIMIT:
            raise errors.ValidationError(f"Criterion '{title}' weight must be in (0, {SCORE_LIMIT}]")
        max_score = _decimal(item.get("max_score"), "max_score")
        if max_score is not None and not 0 <= max_score <= SCORE_LIMIT:
            raise errors.ValidationError(f"Criterion '{title}' max_score must be in [0, {SCORE_LIMIT}]")
        order_index = item.get("order_index")
        order_index = index + 1 if order_index is None else int(order_index)
        if order_index in seen_orders:
            raise errors.ValidationError(f"Duplicate criterion order_index {order_index}")
        seen_orders.add(order_index)
        normalized.append({
            "title": title,
            "description": item.get("description") or "",
            "weight": weight,
            "max_score": max_score,
            "order_index": order_index,
        })
    return normalized


def _check_scale(scale_min: int, scale_max: int) -> None:
    if scale_min < -SCORE_LIMIT or scale_max > SCORE_LIMIT:
        raise errors.ValidationError(
            f"Rubric scale must lie within [-{SCORE_LIMIT}, {SCORE_LIMIT}], got [{scale_min}, {scale_max}]"
        )
    if scale_min >= scale_max:
        raise errors.ValidationError(
            f"Rubric scale_min ({scale_min}) must be lower than scale_max ({scale_max})"
        )


# ---------------------------------------------------------------------------
# Mutations (caller must commit)
# ---------------------------------------------------------------------------


def _replace_criteria(session: Session, rubric: PhaseRubric, criteria: list[dict[str, Any]]) -> None:
    if rubric.criteria:
        rubric.criteria.clear()
        # Old rows must be gone before the new order_index values hit the unique constraint.
        session.flush()
    for c in criteria:
        rubric.criteria.append(RubricCriterion(tenant_id=rubric.tenant_id, **c))


def create_rubric(
    session: Session,
    event_id: int,
    phase_id: int | None,
    data: Mapping[str, Any],
    author_id: int | None = None,
    rubric_scope: str = "phase",
) -> PhaseRubric:
    event = session.get(Event, event_id)
    if event is None:
        raise errors.NotFoundError("Event", event_id)
    if rubric_scope == "phase":
        phase = session.get(Phase, phase_id) if phase_id is not None else None
        if phase is None or phase.event_id != event_id:
            raise errors.NotFoundError("Phase", phase_id)
    elif rubric_scope == "project":
        phase_id = None
    else:
        raise errors.ValidationError(f"Unknown rubric scope {rubric_scope!r}")

    scale_min = data.get("scale_min")
    scale_max = data.get("scale_max")
    scale_min = 0 if scale_min is None else int(scale_min)
    scale_max = 100 if scale_max is None else int(scale_max)
    _check_scale(scale_min, scale_max)
    criteria = normalize_criteria(data.get("criteria") or [])
    if not criteria:
        raise errors.ValidationError("A rubric needs at least one criterion")

    rubric = PhaseRubric(
        tenant_id=event.tenant_id, event_id=event_id, phase_id=phase_id,
        rubric_scope=rubric_scope, name=data["name"],
        description=data.get("description") or "",
        scale_min=scale_min, scale_max=scale_max,
        model_preference=data.get("model_preference"),
        created_by=author_id,
    )
    _replace_criteria(session, rubric, criteria)
    session.add(rubric)
    session.flush()
    log.info("Created %s rubric %s for event %s", rubric_scope, rubric.id, event_id)
    return rubric


def update_rubric(
    session: Session, rubric_id: int, data: Mapping[str, Any], author_id: int | None = None,
) -> PhaseRubric:
    """Partial update. A ``criteria`` list replaces the whole criteria set."""
    rubric = session.get(PhaseRubric, rubric_id)
    if rubric is None:
        raise errors.NotFoundError("Rubric", rubric_id)

    scale_min = data.get("scale_min")
    scale_max = data.get("scale_max")
    _check_scale(
        rubric.scale_min if scale_min is None else int(scale_min),
        rubric.scale_max if scale_max is None else int(scale_max),
    )
    criteria = None
    if data.get("criteria") is not None:
        criteria = normalize_criteria(data["criteria"])
        if not criteria:
            raise errors.ValidationError("A rubric needs at least one criterion")

    for field in ("name", "description", "scale_min", "scale_max", "model_preference"):
        value = data.get(field)
        if value is not None:
            setattr(rubric, field, value)
    rubric.updated_by = author_id
    if criteria is not None:
        _replace_criteria(session, rubric, criteria)
    session.flush()
    return rubric


def delete_rubric(session: Session, rubric_id: int) -> None:
    """Delete a rubric, unlinking tasks. Evaluation snapshots are untouched."""
    rubric = session.get(PhaseRubric, rubric_id)
    if rubric is None:
        raise errors.NotFoundError("Rubric", rubric_id)
    for task in session.execute(select(Task).where(Task.phase_rubric_id == rubric_id)).scalars():
        task.phase_rubric_id = None
    session.delete(rubric)
    session.flush()


# ---------------------------------------------------------------------------
# Snapshots and weighting
# ---------------------------------------------------------------------------


def build_snapshot(rubric: PhaseRubric) -> RubricSnapshot:
    return RubricSnapshot(
        rubric_id=rubric.id,
        name=rubric.name,
        description=rubric.description or "",
        rubric_scope=rubric.rubric_scope,
        scale_min=rubric.scale_min,
        scale_max=rubric.scale_max,
        criteria=tuple(
            CriterionSnapshot(
                id=c.id, title=c.title, description=c.description or "",
                weight=Decimal(c.weight if c.weight is not None else DEFAULT_WEIGHT),
                max_score=Decimal(c.max_score) if c.max_score is not None else None,
                order_index=c.order_index,
            )
            for c in sorted_criteria(rubric)
        ),
    )


def weighted_score(
    snapshot: RubricSnapshot, criterion_scores: Mapping[int, Any],
) -> Decimal | None:
    """Weighted mean of per-criterion scores, expressed on the rubric scale.

    A criterion with ``max_score`` is scored on ``[0, max_score]`` and rescaled
    onto ``[scale_min, scale_max]``; one without is taken as already on the
    rubric scale. Unscored criteria are skipped.
    """
    span = Decimal(snapshot.scale_max - snapshot.scale_min)
    total = Decimal(0)
    weights = Decimal(0)
    for criterion in snapshot.criteria:
        raw = criterion_scores.get(criterion.id) if criterion.id is not None else None
        if raw is None:
            continue
        value = _decimal(raw, f"score for '{criterion.title}'")
        if criterion.max_score:
            value = Decimal(snapshot.scale_min) + (value / criterion.max_score) * span
        total += criterion.weight * value
        weights += criterion.weight
    if not weights:
        return None
    return (total / weights).quantize(Decimal("0.01"))
