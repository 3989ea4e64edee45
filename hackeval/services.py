"""Shared business logic for the hackeval API and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hackeval import errors
from hackeval.assist import AssistRequest, LLMAssistant, ScoringOracle, SubmissionBrief, generate_with_timeout
from hackeval.config import get_settings
from hackeval.evaluations import create_draft, load_snapshot
from hackeval.models import Evaluation, Event, Phase, PhaseRubric, Submission, Task, Team
from hackeval.rubrics import (
    build_snapshot,
    get_project_rubric,
    get_rubric_for,
    rubric_for_target,
    sorted_criteria,
)
from hackeval.schemas import RubricSnapshot
from hackeval.scopes import ResolvedTarget, resolve_target, select_submission_ids
from hackeval.utils import json_parse, submission_time, task_sort_key

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def rubric_summary(rubric: PhaseRubric) -> dict:
    return {
        "id": rubric.id, "event_id": rubric.event_id, "phase_id": rubric.phase_id,
        "rubric_scope": rubric.rubric_scope, "name": rubric.name,
        "description": rubric.description or "",
        "scale_min": rubric.scale_min, "scale_max": rubric.scale_max,
        "model_preference": rubric.model_preference,
        "criteria": [
            {"id": c.id, "title": c.title, "description": c.description or "",
             "weight": c.weight, "max_score": c.max_score, "order_index": c.order_index}
            for c in sorted_criteria(rubric)
        ],
    }


def evaluation_summary(evaluation: Evaluation) -> dict:
    snapshot = load_snapshot(evaluation)
    return {
        "id": evaluation.id,
        "evaluation_scope": evaluation.evaluation_scope,
        "target": evaluation.target.model_dump(),
        "reviewer_id": evaluation.reviewer_id,
        "status": evaluation.status,
        "source": evaluation.source,
        "score": evaluation.score,
        "comment": evaluation.comment or "",
        "evaluated_submission_ids": evaluation.evaluated_submission_ids,
        "rubric_snapshot": snapshot.model_dump() if snapshot else None,
        "metadata": json_parse(evaluation.metadata_json),
        "created_at": evaluation.created_at,
        "finalized_at": evaluation.finalized_at,
    }


# ---------------------------------------------------------------------------
# Operations (caller must commit)
# ---------------------------------------------------------------------------


def create_manual_draft(
    session: Session,
    target: Any,
    reviewer_id: int,
    *,
    comment: str = "",
    score: Any = None,
    submission_ids: list[int] | None = None,
    tenant_id: int | None = None,
) -> Evaluation:
    """Reviewer-authored draft, bound to whatever rubric applies to the target."""
    resolved = resolve_target(session, target, tenant_id)
    return create_draft(
        session, resolved, reviewer_id,
        comment=comment, score=score, source="manual",
        rubric=rubric_for_target(session, resolved),
        evaluated_submission_ids=submission_ids,
    )


def _brief(sub: Submission) -> SubmissionBrief:
    task = sub.task
    return SubmissionBrief(
        id=sub.id,
        task_title=task.title,
        task_description=task.description or "",
        phase_name=task.phase.name if task.phase else "",
        content=sub.content or "",
        attachment_url=sub.attachment_url or "",
        submitted_at=sub.submitted_at,
        is_final=sub.is_final,
    )


def build_assist_request(
    session: Session,
    resolved: ResolvedTarget,
    snapshot: RubricSnapshot,
    submission_ids: list[int],
    locale: str | None = None,
) -> AssistRequest:
    """Collect what the oracle needs to see for ``resolved``."""
    event = session.get(Event, resolved.event_id)
    team = session.get(Team, resolved.team_id)
    header = [f"EVENT: {event.name}", f"TEAM: {team.name}"]
    if resolved.phase_id is not None:
        phase = session.get(Phase, resolved.phase_id)
        header.append(f"PHASE: {phase.name}")
    if resolved.project is not None:
        header.append(f"PROJECT: {resolved.project.name}")
        if resolved.project.summary:
            header.append(f"PROJECT SUMMARY: {resolved.project.summary}")

    if resolved.submission is not None:
        chosen = [resolved.submission]
    else:
        wanted = set(submission_ids)
        order = {t.id: i for i, t in enumerate(resolved.tasks)}
        chosen = sorted(
            (s for s in resolved.candidate_submissions if s.id in wanted),
            key=lambda s: (order.get(s.task_id, len(order)), submission_time(s), s.id),
        )

    return AssistRequest(
        target=resolved.target,
        rubric_snapshot=snapshot,
        locale=locale or get_settings().default_locale,
        submissions=[_brief(s) for s in chosen],
        header=header,
        evaluated_submission_ids=list(submission_ids),
        prompt=event.ai_evaluation_prompt,
        model=event.ai_evaluation_model,
        temperature=event.ai_evaluation_temperature,
        max_tokens=event.ai_evaluation_max_tokens,
    )


async def run_ai_evaluation(
    session: Session,
    target: Any,
    reviewer_id: int,
    *,
    submission_ids: list[int] | None = None,
    locale: str | None = None,
    oracle: ScoringOracle | None = None,
    tenant_id: int | None = None,
    timeout: float | None = None,
) -> Evaluation:
    """Ask the scoring oracle for a proposal and store it as an AI-assisted draft.

    Raises ``NoRubricConfigured`` before the oracle is called when the target
    has no rubric, and ``AdapterUnavailable`` when the oracle fails or times
    out. Nothing is written in either case.
    """
    resolved = resolve_target(session, target, tenant_id)
    rubric = rubric_for_target(session, resolved)
    if rubric is None:
        raise errors.NoRubricConfigured(
            f"No rubric configured for {resolved.scope} target {resolved.target_key}"
        )
    snapshot = build_snapshot(rubric)
    selected = select_submission_ids(resolved, submission_ids)
    request = build_assist_request(session, resolved, snapshot, selected, locale)

    settings = get_settings()
    result = await generate_with_timeout(
        oracle or LLMAssistant(),
        request,
        timeout if timeout is not None else settings.ai_timeout_seconds,
    )
    covered = result.evaluated_submission_ids if result.evaluated_submission_ids is not None else selected
    return create_draft(
        session, resolved, reviewer_id,
        comment=result.comment,
        score=result.score,
        source="ai_assisted",
        snapshot=snapshot,
        evaluated_submission_ids=covered if resolved.scope != "submission" else None,
        metadata={"criteria": result.criteria, "model": result.model, "locale": request.locale},
    )


def resolve_rubric_view(
    session: Session, event_id: int, phase_id: int | None = None, task_id: int | None = None,
) -> dict | None:
    """Rubric a reviewer would score against, for ``GET /api/events/{id}/rubric``."""
    if task_id is not None and phase_id is None:
        task = session.get(Task, task_id)
        if task is None or task.event_id != event_id:
            raise errors.NotFoundError("Task", task_id)
        phase_id = task.phase_id
    rubric = (
        get_rubric_for(session, event_id, phase_id, task_id)
        if phase_id is not None
        else get_project_rubric(session, event_id)
    )
    return rubric_summary(rubric) if rubric else None


def events_overview(session: Session) -> list[dict]:
    """Per-event counts used by the MCP overview resource."""
    events = session.execute(select(Event).order_by(Event.id)).scalars().all()
    overview = []
    for event in events:
        counts = dict(session.execute(
            select(Evaluation.status, func.count(Evaluation.id))
            .join(Team, Evaluation.team_id == Team.id, isouter=True)
            .join(Submission, Evaluation.submission_id == Submission.id, isouter=True)
            .where((Team.event_id == event.id) | (Submission.event_id == event.id))
            .group_by(Evaluation.status)
        ).all())
        overview.append({
            "id": event.id,
            "name": event.name,
            "phases": [
                {"id": p.id, "name": p.name,
                 "tasks": [t.title for t in sorted(p.tasks, key=task_sort_key)]}
                for p in sorted(event.phases, key=lambda p: (p.order_index, p.id))
            ],
            "teams": len(event.teams),
            "evaluations": {"draft": counts.get("draft", 0), "final": counts.get("final", 0)},
        })
    return overview
