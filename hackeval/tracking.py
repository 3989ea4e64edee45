"""Deliverables tracking: a team x task matrix of submission and evaluation status.

The matrix is computed from scratch on every call and contains no wall-clock
values, so two calls over the same data return equal results.
"""
from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from hackeval import errors
from hackeval.models import Evaluation, Event, Phase, Project, Submission, Task, Team
from hackeval.schemas import (
    TrackingCell,
    TrackingColumn,
    TrackingMatrix,
    TrackingPhase,
    TrackingTeam,
)
from hackeval.utils import submission_time, task_sort_key

log = logging.getLogger(__name__)

# Direct evaluations of a submission take precedence when several finals cover it.
_SCOPE_PRIORITY = {"submission": 0, "phase": 1, "project": 2}


def _ordered_structure(session: Session, event_id: int) -> tuple[list[Phase], dict[int, list[Task]], list[Team]]:
    phases = list(session.execute(
        select(Phase).where(Phase.event_id == event_id).order_by(Phase.order_index, Phase.id)
    ).scalars().all())
    tasks_by_phase: dict[int, list[Task]] = {p.id: [] for p in phases}
    for task in session.execute(select(Task).where(Task.event_id == event_id)).scalars():
        if task.phase_id in tasks_by_phase:
            tasks_by_phase[task.phase_id].append(task)
    for tasks in tasks_by_phase.values():
        tasks.sort(key=task_sort_key)
    teams = sorted(
        session.execute(select(Team).where(Team.event_id == event_id)).scalars().all(),
        key=lambda t: ((t.name or "").casefold(), t.id),
    )
    return phases, tasks_by_phase, teams


def _final_evaluations(
    session: Session, tenant_id: int, submission_ids: list[int], team_ids: list[int],
) -> list[Evaluation]:
    if not submission_ids and not team_ids:
        return []
    finals = session.execute(
        select(Evaluation).options(selectinload(Evaluation.submission_links)).where(
            Evaluation.tenant_id == tenant_id,
            Evaluation.status == "final",
            or_(Evaluation.submission_id.in_(submission_ids), Evaluation.team_id.in_(team_ids)),
        )
    ).scalars().all()
    return sorted(finals, key=lambda e: (_SCOPE_PRIORITY.get(e.evaluation_scope, 9), e.id))


def build_tracking_matrix(
    session: Session, event_id: int, *, final_submissions_only: bool = False,
) -> TrackingMatrix:
    """Build the deliverables matrix for every team and task of an event.

    A cell counts as finally evaluated when a final evaluation covers any of
    its eligible submissions, directly or through ``evaluated_submission_ids``
    of a phase or project evaluation. A pending cell is one that was submitted
    but has no covering final evaluation.
    """
    event = session.get(Event, event_id)
    if event is None:
        raise errors.NotFoundError("Event", event_id)

    phases, tasks_by_phase, teams = _ordered_structure(session, event_id)
    team_ids = [t.id for t in teams]
    projects = {
        p.team_id: p for p in session.execute(
            select(Project).where(Project.event_id == event_id).order_by(Project.id)
        ).scalars()
    }

    by_cell: dict[tuple[int, int], list[Submission]] = defaultdict(list)
    submissions = session.execute(select(Submission).where(Submission.event_id == event_id)).scalars().all()
    for sub in submissions:
        if final_submissions_only and not sub.is_final:
            continue
        by_cell[(sub.team_id, sub.task_id)].append(sub)
    for subs in by_cell.values():
        # Newest first
        subs.sort(key=lambda s: (submission_time(s), s.id), reverse=True)

    covering: dict[int, int] = {}
    final_phases: set[tuple[int, int]] = set()
    final_projects: set[int] = set()
    for evaluation in _final_evaluations(session, event.tenant_id, [s.id for s in submissions], team_ids):
        for sub_id in evaluation.covered_submission_ids:
            covering.setdefault(sub_id, evaluation.id)
        if evaluation.evaluation_scope == "phase":
            final_phases.add((evaluation.team_id, evaluation.phase_id))
        elif evaluation.evaluation_scope == "project":
            final_projects.add(evaluation.team_id)

    columns = [
        TrackingColumn(
            phase_id=phase.id, phase_name=phase.name, task_id=task.id, task_title=task.title,
            order_index=task.order_index or 0, required=bool(task.is_required), due_date=task.due_date,
        )
        for phase in phases for task in tasks_by_phase[phase.id]
    ]

    cells: list[TrackingCell] = []
    team_rows: list[TrackingTeam] = []
    for team in teams:
        submitted_count = evaluated_count = 0
        for column in columns:
            subs = by_cell.get((team.id, column.task_id), [])
            representative = next((s for s in subs if s.is_final), subs[0] if subs else None)
            final_id = None
            if representative is not None:
                for sub in [representative, *subs]:
                    if sub.id in covering:
                        final_id = covering[sub.id]
                        break
            submitted = bool(subs)
            has_final = final_id is not None
            submitted_count += submitted
            evaluated_count += has_final
            cells.append(TrackingCell(
                team_id=team.id,
                phase_id=column.phase_id,
                task_id=column.task_id,
                submitted=submitted,
                submission_id=representative.id if representative else None,
                submitted_at=(representative.submitted_at or representative.created_at) if representative else None,
                has_final_evaluation=has_final,
                has_pending_evaluation=submitted and not has_final,
                final_evaluation_id=final_id,
            ))
        project = projects.get(team.id)
        team_rows.append(TrackingTeam(
            id=team.id,
            name=team.name,
            project_id=project.id if project else None,
            has_final_project_evaluation=team.id in final_projects,
            phase_evaluations={p.id: (team.id, p.id) in final_phases for p in phases},
            submitted_count=submitted_count,
            evaluated_count=evaluated_count,
        ))

    log.debug("Tracking matrix for event %s: %d teams x %d tasks", event_id, len(teams), len(columns))
    return TrackingMatrix(
        event_id=event_id,
        final_submissions_only=final_submissions_only,
        phases=[
            TrackingPhase(
                id=p.id, name=p.name, order_index=p.order_index or 0,
                is_elimination=bool(p.is_elimination),
                task_ids=[t.id for t in tasks_by_phase[p.id]],
            )
            for p in phases
        ],
        teams=team_rows,
        columns=columns,
        cells=cells,
    )
