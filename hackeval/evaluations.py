"""Evaluation lifecycle: drafts, promotion to final, in-place revision of finals.

State machine is ``draft -> final``, one way. Every write goes through this
module so the at-most-one-final rule is checked in three places: an
application read, a compare-and-swap ``UPDATE ... WHERE status = 'draft'``,
and the partial unique index on ``target_key``.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hackeval import errors
from hackeval.config import get_settings
from hackeval.models import Evaluation, PhaseRubric
from hackeval.rubrics import build_snapshot
from hackeval.schemas import RubricSnapshot
from hackeval.scopes import ResolvedTarget, resolve_target, select_submission_ids
from hackeval.utils import json_parse, utcnow

log = logging.getLogger(__name__)

VALID_SOURCES = {"manual", "ai_assisted"}
_NEWEST_FIRST = (Evaluation.created_at.desc(), Evaluation.id.desc())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_snapshot(evaluation: Evaluation) -> RubricSnapshot | None:
    data = json_parse(evaluation.rubric_snapshot_json, None)
    return RubricSnapshot.model_validate(data) if data else None


def validate_score(score: Any, snapshot: RubricSnapshot | None) -> Decimal | None:
    """Check ``score`` against the bound rubric's scale, or the default 0-10."""
    if score is None:
        return None
    if isinstance(score, bool):
        raise errors.ValidationError("score must be a number")
    try:
        value = Decimal(str(score))
    except (InvalidOperation, ValueError) as exc:
        raise errors.ValidationError("score must be a number") from exc
    if not value.is_finite():
        raise errors.ValidationError("score must be a finite number")

    if snapshot is not None:
        low, high = snapshot.scale_min, snapshot.scale_max
    else:
        settings = get_settings()
        low, high = settings.default_scale_min, settings.default_scale_max
    if not low <= value <= high:
        raise errors.ValidationError(f"score {value} is outside the range [{low}, {high}]")
    return value.quantize(Decimal("0.01"))


def _as_dict(patch: BaseModel | Mapping[str, Any] | None) -> dict[str, Any]:
    if patch is None:
        return {}
    if isinstance(patch, BaseModel):
        return patch.model_dump(exclude_unset=True)
    return dict(patch)


def _owned(session: Session, evaluation_id: int, reviewer_id: int) -> Evaluation:
    evaluation = session.get(Evaluation, evaluation_id)
    if evaluation is None:
        raise errors.NotFoundError("Evaluation", evaluation_id)
    if evaluation.reviewer_id != reviewer_id:
        raise errors.PermissionDeniedError(
            f"Evaluation {evaluation_id} belongs to reviewer {evaluation.reviewer_id}"
        )
    return evaluation


def _final_for(session: Session, target_key: str, exclude_id: int | None = None) -> Evaluation | None:
    query = select(Evaluation).where(Evaluation.target_key == target_key, Evaluation.status == "final")
    if exclude_id is not None:
        query = query.where(Evaluation.id != exclude_id)
    return session.execute(query).scalars().first()


def _patch_values(session: Session, evaluation: Evaluation, patch: dict[str, Any]) -> dict[str, Any]:
    """Validate an edit and turn it into attribute values. Nothing is written."""
    values: dict[str, Any] = {}
    if patch.get("comment") is not None:
        values["comment"] = str(patch["comment"])
    if "score" in patch:
        values["score"] = validate_score(patch["score"], load_snapshot(evaluation))
    ids = patch.get("submission_ids", patch.get("evaluated_submission_ids"))
    if ids is not None:
        resolved = resolve_target(session, evaluation.target)
        values["evaluated_submission_ids"] = select_submission_ids(resolved, ids)
    return values


# ---------------------------------------------------------------------------
# Writes (caller commits)
# ---------------------------------------------------------------------------


def create_draft(
    session: Session,
    resolved: ResolvedTarget,
    reviewer_id: int,
    *,
    comment: str = "",
    score: Any = None,
    source: str = "manual",
    rubric: PhaseRubric | None = None,
    snapshot: RubricSnapshot | None = None,
    evaluated_submission_ids: list[int] | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> Evaluation:
    """Insert a new draft. Earlier drafts for the target are kept."""
    if source not in VALID_SOURCES:
        raise errors.ValidationError(f"Unknown evaluation source {source!r}")
    if snapshot is None and rubric is not None:
        snapshot = build_snapshot(rubric)
    value = validate_score(score, snapshot)
    ids = select_submission_ids(resolved, evaluated_submission_ids)

    evaluation = Evaluation(
        tenant_id=resolved.tenant_id,
        reviewer_id=reviewer_id,
        score=value,
        comment=comment or "",
        status="draft",
        source=source,
        rubric_snapshot_json=snapshot.model_dump_json() if snapshot else None,
        metadata_json=json.dumps(dict(metadata or {}), default=str),
    )
    evaluation.target = resolved.target
    evaluation.evaluated_submission_ids = ids
    session.add(evaluation)
    session.flush()
    log.info("Draft evaluation %s created for %s by reviewer %s (%s)",
             evaluation.id, evaluation.target_key, reviewer_id, source)
    return evaluation


def promote_to_final(
    session: Session,
    evaluation_id: int,
    reviewer_id: int,
    patch: BaseModel | Mapping[str, Any] | None = None,
) -> Evaluation:
    """Promote a draft to final, applying optional edits in the same write.

    Raises ``ConflictError`` if the record is already final, if another final
    exists for the target, or if a concurrent promotion got there first.
    """
    evaluation = _owned(session, evaluation_id, reviewer_id)
    if evaluation.status == "final":
        raise errors.ConflictError(f"Evaluation {evaluation_id} is already final")
    values = _patch_values(session, evaluation, _as_dict(patch))

    existing = _final_for(session, evaluation.target_key, exclude_id=evaluation.id)
    if existing is not None:
        raise errors.ConflictError(
            f"Target {evaluation.target_key} already has final evaluation {existing.id}"
        )

    if "evaluated_submission_ids" in values:
        evaluation.evaluated_submission_ids = values.pop("evaluated_submission_ids")
        session.flush()
    values.update(status="final", finalized_at=utcnow())
    stmt = (
        update(Evaluation)
        .where(Evaluation.id == evaluation.id, Evaluation.status == "draft")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
    except IntegrityError as exc:
        session.rollback()
        raise errors.ConflictError(
            f"Target {evaluation.target_key} already has a final evaluation"
        ) from exc
    if result.rowcount != 1:
        session.rollback()
        raise errors.ConflictError(f"Evaluation {evaluation_id} was finalized concurrently")

    session.refresh(evaluation)
    log.info("Evaluation %s promoted to final for %s", evaluation.id, evaluation.target_key)
    return evaluation


def update_evaluation(
    session: Session,
    evaluation_id: int,
    reviewer_id: int,
    patch: BaseModel | Mapping[str, Any],
) -> Evaluation:
    """Edit a draft. ``status: "final"`` in the patch promotes it as well."""
    data = _as_dict(patch)
    status = data.pop("status", None)
    if status == "final":
        return promote_to_final(session, evaluation_id, reviewer_id, data)
    if status not in (None, "draft"):
        raise errors.ValidationError(f"Unknown evaluation status {status!r}")

    evaluation = _owned(session, evaluation_id, reviewer_id)
    if evaluation.status != "draft":
        raise errors.ConflictError(
            f"Evaluation {evaluation_id} is final; use the revise operation to change it"
        )
    for key, value in _patch_values(session, evaluation, data).items():
        setattr(evaluation, key, value)
    session.flush()
    return evaluation


def revise_final(
    session: Session,
    evaluation_id: int,
    reviewer_id: int,
    patch: BaseModel | Mapping[str, Any],
) -> Evaluation:
    """Change a final evaluation in place. The record stays the target's only final."""
    data = _as_dict(patch)
    if data.pop("status", "final") != "final":
        raise errors.ConflictError("A final evaluation cannot go back to draft")

    evaluation = _owned(session, evaluation_id, reviewer_id)
    if evaluation.status != "final":
        raise errors.ConflictError(f"Evaluation {evaluation_id} is not final")
    values = _patch_values(session, evaluation, data)
    if not values:
        return evaluation

    metadata = json_parse(evaluation.metadata_json)
    metadata["revisions"] = int(metadata.get("revisions", 0)) + 1
    values["metadata_json"] = json.dumps(metadata, default=str)
    for key, value in values.items():
        setattr(evaluation, key, value)
    session.flush()
    log.info("Final evaluation %s revised by reviewer %s", evaluation.id, reviewer_id)
    return evaluation


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_evaluation(session: Session, evaluation_id: int, tenant_id: int | None = None) -> Evaluation:
    evaluation = session.get(Evaluation, evaluation_id)
    if evaluation is None or (tenant_id is not None and evaluation.tenant_id != tenant_id):
        raise errors.NotFoundError("Evaluation", evaluation_id)
    return evaluation


def list_evaluations(
    session: Session,
    *,
    target_key: str | None = None,
    status: str | None = None,
    reviewer_id: int | None = None,
    tenant_id: int | None = None,
    scope: str | None = None,
) -> list[Evaluation]:
    """Evaluations matching every given filter, newest first."""
    query = select(Evaluation)
    if target_key is not None:
        query = query.where(Evaluation.target_key == target_key)
    if status is not None:
        query = query.where(Evaluation.status == status)
    if reviewer_id is not None:
        query = query.where(Evaluation.reviewer_id == reviewer_id)
    if tenant_id is not None:
        query = query.where(Evaluation.tenant_id == tenant_id)
    if scope is not None:
        query = query.where(Evaluation.evaluation_scope == scope)
    return list(session.execute(query.order_by(*_NEWEST_FIRST)).scalars().all())


def current_evaluation(
    session: Session, target_key: str, reviewer_id: int | None = None,
) -> Evaluation | None:
    """The target's final evaluation, else the newest draft (of ``reviewer_id`` if given)."""
    final = _final_for(session, target_key)
    if final is not None:
        return final
    query = select(Evaluation).where(Evaluation.target_key == target_key, Evaluation.status == "draft")
    if reviewer_id is not None:
        query = query.where(Evaluation.reviewer_id == reviewer_id)
    return session.execute(query.order_by(*_NEWEST_FIRST)).scalars().first()
