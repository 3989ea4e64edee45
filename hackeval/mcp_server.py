from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from hackeval import errors, evaluations, services
from hackeval.db import init_db, session_scope
from hackeval.schemas import EvaluationOut, RubricOut
from hackeval.scopes import target_from_refs
from hackeval.tracking import build_tracking_matrix

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def hackeval_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "hackeval",
    instructions=(
        "hackeval stores rubric-based evaluations of hackathon deliverables. "
        "These tools are read-only. Start with the hackeval://overview resource, "
        "then get_tracking_matrix(event_id) to see which deliverables still need a "
        "final evaluation, and list_evaluations(...) to read reviewer feedback."
    ),
    lifespan=hackeval_lifespan,
    json_response=True,
)


def _error(exc: errors.HackevalError) -> dict:
    return {"error": exc.kind, "detail": exc.message}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("hackeval://overview")
def hackeval_overview() -> str:
    """Events, their phases and tasks, and how many evaluations each has."""
    with session_scope() as session:
        events = services.events_overview(session)
    return json.dumps({
        "system": "hackeval: rubric-based evaluation of hackathon deliverables",
        "data_model": {
            "event": "A program run by a tenant, made of ordered phases.",
            "task": "A deliverable inside a phase; teams answer it with submissions.",
            "rubric": "Weighted criteria and a score scale, bound to a phase or to the event's projects.",
            "evaluation": "A reviewer's score and comment for a submission, a team's phase, or a team's project. Draft until promoted to final.",
        },
        "scopes": {
            "submission": "submission_id",
            "phase": "phase_id + team_id",
            "project": "project_id + team_id",
        },
        "events": events,
    }, indent=2, default=str)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_tracking_matrix(event_id: int, final_submissions_only: bool = False) -> dict:
    """Team x task deliverables matrix for an event.

    Each cell says whether the team submitted, whether a final evaluation
    covers the submission, and whether one is still pending.

    Args:
        event_id: Event to report on.
        final_submissions_only: Count only submissions marked final.
    """
    with session_scope() as session:
        try:
            matrix = build_tracking_matrix(session, event_id, final_submissions_only=final_submissions_only)
        except errors.HackevalError as exc:
            return _error(exc)
        return matrix.model_dump(mode="json")


@mcp.tool()
def get_rubric(event_id: int, phase_id: int | None = None, task_id: int | None = None) -> dict:
    """Rubric that applies to a task or phase; the project rubric when neither is given."""
    with session_scope() as session:
        try:
            rubric = services.resolve_rubric_view(session, event_id, phase_id, task_id)
        except errors.HackevalError as exc:
            return _error(exc)
        if rubric is None:
            return {"error": errors.NoRubricConfigured.kind, "detail": "No rubric configured"}
        return RubricOut.model_validate(rubric).model_dump(mode="json")


@mcp.tool()
def list_evaluations(
    scope: str,
    submission_id: int | None = None, phase_id: int | None = None,
    project_id: int | None = None, team_id: int | None = None,
    status: str | None = None,
) -> list[dict] | dict:
    """List evaluations of one target, newest first.

    Args:
        scope: submission, phase or project.
        submission_id: Required for scope=submission.
        phase_id: Required (with team_id) for scope=phase.
        project_id: Required (with team_id) for scope=project.
        team_id: Team for phase and project scopes.
        status: Optional filter, draft or final.
    """
    with session_scope() as session:
        try:
            target = target_from_refs(scope, {
                "submission_id": submission_id, "phase_id": phase_id,
                "project_id": project_id, "team_id": team_id,
            })
        except errors.HackevalError as exc:
            return _error(exc)
        return [
            EvaluationOut.model_validate(services.evaluation_summary(e)).model_dump(mode="json")
            for e in evaluations.list_evaluations(session, target_key=target.key, status=status)
        ]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the hackeval MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
