"""Resolve an evaluation target to the entities and submissions behind it."""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from hackeval import errors
from hackeval.models import Phase, Project, Submission, Task, Team
from hackeval.schemas import EvaluationTarget, PhaseTarget, ProjectTarget, SubmissionTarget
from hackeval.utils import submission_time, task_sort_key

log = logging.getLogger(__name__)

_TARGET_ADAPTER: TypeAdapter = TypeAdapter(EvaluationTarget)


@dataclass
class ResolvedTarget:
    target: SubmissionTarget | PhaseTarget | ProjectTarget
    tenant_id: int
    event_id: int
    team_id: int
    phase_id: int | None = None
    task_id: int | None = None
    project: Project | None = None
    submission: Submission | None = None
    tasks: list[Task] = field(default_factory=list)
    candidate_submissions: list[Submission] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return self.target.scope

    @property
    def target_key(self) -> str:
        return self.target.key

    @property
    def candidate_ids(self) -> set[int]:
        return {s.id for s in self.candidate_submissions}


def parse_target(data: Any) -> SubmissionTarget | PhaseTarget | ProjectTarget:
    """Turn a ``{"scope": ..., ...refs}`` mapping into a target, rejecting bad refs."""
    if isinstance(data, (SubmissionTarget, PhaseTarget, ProjectTarget)):
        return data
    try:
        return _TARGET_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or 'target'}: {e['msg']}" for e in exc.errors()
        )
        raise errors.InvalidScope(f"Invalid evaluation target: {problems}") from exc


def _get(session: Session, model, entity_id: int, label: str, tenant_id: int | None):
    obj = session.get(model, entity_id)
    # Other tenants' rows are reported as missing.
    if obj is None or (tenant_id is not None and obj.tenant_id != tenant_id):
        raise errors.NotFoundError(label, entity_id)
    return obj


def _team_submissions(session: Session, team_id: int, *conditions) -> list[Submission]:
    return list(session.execute(
        select(Submission).where(Submission.team_id == team_id, *conditions)
    ).scalars().all())


def resolve_target(
    session: Session, target: Any, tenant_id: int | None = None,
) -> ResolvedTarget:
    """Validate ``target`` against the store.

    Raises ``InvalidScope`` for malformed refs, ``NotFoundError`` for missing
    entities and ``ValidationError`` when the referenced entities do not
    belong together (team from another event, project of another team).
    """
    target = parse_target(target)

    if isinstance(target, SubmissionTarget):
        sub = _get(session, Submission, target.submission_id, "Submission", tenant_id)
        task = sub.task
        return ResolvedTarget(
            target=target, tenant_id=sub.tenant_id, event_id=sub.event_id,
            team_id=sub.team_id, phase_id=task.phase_id, task_id=task.id,
            submission=sub, tasks=[task], candidate_submissions=[sub],
        )

    team = _get(session, Team, target.team_id, "Team", tenant_id)

    if isinstance(target, PhaseTarget):
        phase = _get(session, Phase, target.phase_id, "Phase", tenant_id)
        if team.event_id != phase.event_id or team.tenant_id != phase.tenant_id:
            raise errors.ValidationError(
                f"Team {team.id} does not take part in the event of phase {phase.id}"
            )
        tasks = sorted(phase.tasks, key=task_sort_key)
        task_ids = [t.id for t in tasks]
        candidates = _team_submissions(session, team.id, Submission.task_id.in_(task_ids)) if task_ids else []
        return ResolvedTarget(
            target=target, tenant_id=phase.tenant_id, event_id=phase.event_id,
            team_id=team.id, phase_id=phase.id, tasks=tasks,
            candidate_submissions=candidates,
        )

    project = _get(session, Project, target.project_id, "Project", tenant_id)
    if project.team_id != team.id or project.event_id != team.event_id:
        raise errors.ValidationError(f"Project {project.id} does not belong to team {team.id}")
    phases = {p.id: p for p in session.execute(
        select(Phase).where(Phase.event_id == project.event_id)
    ).scalars()}
    tasks = sorted(
        (t for p in phases.values() for t in p.tasks),
        key=lambda t: ((phases[t.phase_id].order_index, t.phase_id), task_sort_key(t)),
    )
    candidates = _team_submissions(session, team.id, Submission.event_id == project.event_id)
    return ResolvedTarget(
        target=target, tenant_id=project.tenant_id, event_id=project.event_id,
        team_id=team.id, project=project, tasks=tasks,
        candidate_submissions=candidates,
    )


def default_submission_ids(resolved: ResolvedTarget) -> list[int]:
    """Advisory default for what a phase/project evaluation covers.

    Per task: every submission marked final, or if there is none, the most
    recent submission. Ordered by task order, then submission time.
    """
    by_task: dict[int, list[Submission]] = defaultdict(list)
    for sub in resolved.candidate_submissions:
        by_task[sub.task_id].append(sub)

    selected: list[int] = []
    for task in resolved.tasks:
        subs = sorted(by_task.get(task.id, []), key=lambda s: (submission_time(s), s.id))
        if not subs:
            continue
        finals = [s for s in subs if s.is_final]
        selected.extend(s.id for s in (finals or subs[-1:]))
    return selected


def select_submission_ids(
    resolved: ResolvedTarget, requested: Iterable[int] | None,
) -> list[int]:
    """Submissions a new evaluation records as evaluated.

    ``None`` means the default selection. An explicit list must only name
    submissions of the team within the target; order is kept, repeats dropped.
    Submission-scope evaluations always record an empty list.
    """
    if resolved.scope == "submission":
        if requested and set(requested) - {resolved.target.submission_id}:
            raise errors.ValidationError("A submission evaluation cannot cover other submissions")
        return []
    if requested is None:
        return default_submission_ids(resolved)

    allowed = resolved.candidate_ids
    chosen: list[int] = []
    for sub_id in requested:
        sub_id = int(sub_id)
        if sub_id not in allowed:
            raise errors.ValidationError(
                f"Submission {sub_id} is not a submission of team {resolved.team_id} in this {resolved.scope}"
            )
        if sub_id not in chosen:
            chosen.append(sub_id)
    return chosen


def target_from_refs(scope: str, refs: Mapping[str, Any]) -> SubmissionTarget | PhaseTarget | ProjectTarget:
    """Build a target from loose query parameters, ignoring the ``None`` ones."""
    return parse_target({"scope": scope, **{k: v for k, v in refs.items() if v is not None}})
