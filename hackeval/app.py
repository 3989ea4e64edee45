from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from hackeval import errors, evaluations, rubrics, services
from hackeval.config import get_settings
from hackeval.db import init_db, session_generator
from hackeval.models import Event, PhaseRubric
from hackeval.notifications import FinalEvaluationNotice, dispatch_final_evaluation
from hackeval.schemas import (
    AIEvaluationRequest,
    EvaluationCreate,
    EvaluationOut,
    EvaluationPatch,
    EvaluationScope,
    EvaluationStatus,
    RubricCreate,
    RubricOut,
    RubricUpdate,
    TrackingMatrix,
)
from hackeval.scopes import target_from_refs
from hackeval.tracking import build_tracking_matrix

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="hackeval",
    version="0.1.0",
    description=(
        "Rubric-based evaluation of hackathon and innovation-program submissions. "
        "Reviewer identity comes from the X-Reviewer-Id header, tenant from X-Tenant-Id."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Rubrics", "description": "Per-phase and per-project rubrics with weighted criteria."},
        {"name": "Evaluations", "description": "Draft and final evaluations of submissions, phases and projects."},
        {"name": "AI", "description": "AI-assisted draft evaluations. Requires an LLM API key."},
        {"name": "Tracking", "description": "Deliverables matrix per event."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_response(status_code: int, kind: str, detail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "detail": detail})


@app.exception_handler(errors.HackevalError)
async def hackeval_error_handler(request: Request, exc: errors.HackevalError):
    log.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    response = _error_response(exc.status_code, exc.kind, exc.message)
    if exc.retryable:
        response.headers["Retry-After"] = "30"
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return _error_response(422, errors.ValidationError.kind, problems)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def reviewer_id(x_reviewer_id: int | None = Header(None)) -> int:
    if x_reviewer_id is None:
        raise errors.PermissionDeniedError("X-Reviewer-Id header is required")
    return x_reviewer_id


def tenant_id(x_tenant_id: int | None = Header(None)) -> int | None:
    return x_tenant_id


def _get_rubric(session: Session, rubric_id: int, tenant: int | None) -> PhaseRubric:
    rubric = session.get(PhaseRubric, rubric_id)
    if rubric is None or (tenant is not None and rubric.tenant_id != tenant):
        raise errors.NotFoundError("Rubric", rubric_id)
    return rubric


def _check_event_tenant(session: Session, event_id: int, tenant: int | None) -> None:
    event = session.get(Event, event_id)
    if event is None or (tenant is not None and event.tenant_id != tenant):
        raise errors.NotFoundError("Event", event_id)


def _notify_final(background: BackgroundTasks, evaluation) -> None:
    background.add_task(dispatch_final_evaluation, FinalEvaluationNotice.from_evaluation(evaluation))


# ---------------------------------------------------------------------------
# Routes: Rubrics
# ---------------------------------------------------------------------------


@app.get("/api/events/{event_id}/phases/{phase_id}/rubrics", response_model=list[RubricOut],
         tags=["Rubrics"], summary="List rubrics bound to a phase, newest first")
async def list_phase_rubrics(event_id: int, phase_id: int, session: Session = Depends(db_session),
                             tenant: int | None = Depends(tenant_id)):
    _check_event_tenant(session, event_id, tenant)
    return [services.rubric_summary(r) for r in rubrics.list_rubrics(session, event_id, phase_id)]


@app.post("/api/events/{event_id}/phases/{phase_id}/rubrics", response_model=RubricOut, status_code=201,
          tags=["Rubrics"], summary="Create a phase rubric with its criteria")
async def create_phase_rubric(event_id: int, phase_id: int, body: RubricCreate,
                              session: Session = Depends(db_session),
                              tenant: int | None = Depends(tenant_id),
                              author: int | None = Header(None, alias="X-Reviewer-Id")):
    _check_event_tenant(session, event_id, tenant)
    rubric = rubrics.create_rubric(session, event_id, phase_id, body.model_dump(), author_id=author)
    session.commit()
    return services.rubric_summary(rubric)


@app.post("/api/events/{event_id}/rubrics/project", response_model=RubricOut, status_code=201,
          tags=["Rubrics"], summary="Create the project-level rubric of an event")
async def create_project_rubric(event_id: int, body: RubricCreate,
                                session: Session = Depends(db_session),
                                tenant: int | None = Depends(tenant_id),
                                author: int | None = Header(None, alias="X-Reviewer-Id")):
    _check_event_tenant(session, event_id, tenant)
    rubric = rubrics.create_rubric(session, event_id, None, body.model_dump(),
                                   author_id=author, rubric_scope="project")
    session.commit()
    return services.rubric_summary(rubric)


@app.put("/api/rubrics/{rubric_id}", response_model=RubricOut,
         tags=["Rubrics"], summary="Update a rubric (partial; criteria list replaces all criteria)")
async def update_rubric(rubric_id: int, body: RubricUpdate, session: Session = Depends(db_session),
                        tenant: int | None = Depends(tenant_id),
                        author: int | None = Header(None, alias="X-Reviewer-Id")):
    _get_rubric(session, rubric_id, tenant)
    rubric = rubrics.update_rubric(session, rubric_id, body.model_dump(exclude_unset=True), author_id=author)
    session.commit()
    return services.rubric_summary(rubric)


@app.delete("/api/rubrics/{rubric_id}", status_code=204,
            tags=["Rubrics"], summary="Delete a rubric; existing evaluation snapshots are kept")
async def delete_rubric(rubric_id: int, session: Session = Depends(db_session),
                        tenant: int | None = Depends(tenant_id)):
    _get_rubric(session, rubric_id, tenant)
    rubrics.delete_rubric(session, rubric_id)
    session.commit()
    return Response(status_code=204)


@app.get("/api/events/{event_id}/rubric", response_model=RubricOut | None,
         tags=["Rubrics"], summary="Rubric that applies to a task, a phase, or the event's projects")
async def get_rubric_for(event_id: int,
                         phase_id: int | None = Query(None),
                         task_id: int | None = Query(None),
                         session: Session = Depends(db_session),
                         tenant: int | None = Depends(tenant_id)):
    _check_event_tenant(session, event_id, tenant)
    return services.resolve_rubric_view(session, event_id, phase_id, task_id)


# ---------------------------------------------------------------------------
# Routes: Evaluations (fixed paths before parameterized to avoid shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/evaluations", response_model=EvaluationOut, status_code=201,
          tags=["Evaluations"], summary="Create a draft evaluation for a target")
async def create_evaluation(body: EvaluationCreate, session: Session = Depends(db_session),
                            reviewer: int = Depends(reviewer_id),
                            tenant: int | None = Depends(tenant_id)):
    evaluation = services.create_manual_draft(
        session, body.target, reviewer,
        comment=body.comment, score=body.score,
        submission_ids=body.submission_ids, tenant_id=tenant,
    )
    session.commit()
    return services.evaluation_summary(evaluation)


@app.post("/api/evaluations/ai", response_model=EvaluationOut, status_code=201,
          tags=["AI", "Evaluations"], summary="Generate an AI-assisted draft evaluation")
async def create_ai_evaluation(body: AIEvaluationRequest, session: Session = Depends(db_session),
                               reviewer: int = Depends(reviewer_id),
                               tenant: int | None = Depends(tenant_id)):
    evaluation = await services.run_ai_evaluation(
        session, body.target, reviewer,
        submission_ids=body.submission_ids, locale=body.locale, tenant_id=tenant,
    )
    session.commit()
    return services.evaluation_summary(evaluation)


def _target_key(scope: EvaluationScope, submission_id, phase_id, project_id, team_id) -> str:
    return target_from_refs(scope, {
        "submission_id": submission_id, "phase_id": phase_id,
        "project_id": project_id, "team_id": team_id,
    }).key


@app.get("/api/evaluations", response_model=list[EvaluationOut],
         tags=["Evaluations"], summary="List evaluations of a target, newest first")
async def list_evaluations(scope: EvaluationScope,
                           submission_id: int | None = Query(None),
                           phase_id: int | None = Query(None),
                           project_id: int | None = Query(None),
                           team_id: int | None = Query(None),
                           status: EvaluationStatus | None = Query(None),
                           session: Session = Depends(db_session),
                           tenant: int | None = Depends(tenant_id)):
    key = _target_key(scope, submission_id, phase_id, project_id, team_id)
    return [
        services.evaluation_summary(e)
        for e in evaluations.list_evaluations(session, target_key=key, status=status, tenant_id=tenant)
    ]


@app.get("/api/evaluations/current", response_model=EvaluationOut | None,
         tags=["Evaluations"], summary="The target's final evaluation, else the newest draft")
async def current_evaluation(scope: EvaluationScope,
                             submission_id: int | None = Query(None),
                             phase_id: int | None = Query(None),
                             project_id: int | None = Query(None),
                             team_id: int | None = Query(None),
                             mine: bool = Query(False, description="Only consider drafts of the calling reviewer"),
                             session: Session = Depends(db_session),
                             tenant: int | None = Depends(tenant_id),
                             reviewer: int | None = Header(None, alias="X-Reviewer-Id")):
    key = _target_key(scope, submission_id, phase_id, project_id, team_id)
    evaluation = evaluations.current_evaluation(session, key, reviewer if mine else None)
    if evaluation is None or (tenant is not None and evaluation.tenant_id != tenant):
        return None
    return services.evaluation_summary(evaluation)


@app.get("/api/evaluations/{evaluation_id}", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Get one evaluation")
async def get_evaluation(evaluation_id: int, session: Session = Depends(db_session),
                         tenant: int | None = Depends(tenant_id)):
    return services.evaluation_summary(evaluations.get_evaluation(session, evaluation_id, tenant))


@app.patch("/api/evaluations/{evaluation_id}", response_model=EvaluationOut,
           tags=["Evaluations"], summary="Edit a draft; status=final promotes it")
async def patch_evaluation(evaluation_id: int, body: EvaluationPatch, background: BackgroundTasks,
                           session: Session = Depends(db_session),
                           reviewer: int = Depends(reviewer_id),
                           tenant: int | None = Depends(tenant_id)):
    evaluations.get_evaluation(session, evaluation_id, tenant)
    evaluation = evaluations.update_evaluation(session, evaluation_id, reviewer, body)
    session.commit()
    if body.status == "final":
        _notify_final(background, evaluation)
    return services.evaluation_summary(evaluation)


@app.post("/api/evaluations/{evaluation_id}/finalize", response_model=EvaluationOut,
          tags=["Evaluations"], summary="Promote a draft to final (optional edits in the body)")
async def finalize_evaluation(evaluation_id: int, background: BackgroundTasks,
                              body: EvaluationPatch | None = None,
                              session: Session = Depends(db_session),
                              reviewer: int = Depends(reviewer_id),
                              tenant: int | None = Depends(tenant_id)):
    evaluations.get_evaluation(session, evaluation_id, tenant)
    patch = body.model_dump(exclude_unset=True, exclude={"status"}) if body else None
    evaluation = evaluations.promote_to_final(session, evaluation_id, reviewer, patch)
    session.commit()
    _notify_final(background, evaluation)
    return services.evaluation_summary(evaluation)


@app.put("/api/evaluations/{evaluation_id}/final", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Revise a final evaluation in place")
async def revise_final_evaluation(evaluation_id: int, body: EvaluationPatch,
                                  session: Session = Depends(db_session),
                                  reviewer: int = Depends(reviewer_id),
                                  tenant: int | None = Depends(tenant_id)):
    evaluations.get_evaluation(session, evaluation_id, tenant)
    evaluation = evaluations.revise_final(session, evaluation_id, reviewer, body)
    session.commit()
    return services.evaluation_summary(evaluation)


# ---------------------------------------------------------------------------
# Routes: Tracking
# ---------------------------------------------------------------------------


@app.get("/api/events/{event_id}/tracking", response_model=TrackingMatrix,
         tags=["Tracking"], summary="Team x task deliverables matrix with evaluation status")
async def get_tracking(event_id: int,
                       final_submissions_only: bool = Query(False),
                       session: Session = Depends(db_session),
                       tenant: int | None = Depends(tenant_id)):
    _check_event_tenant(session, event_id, tenant)
    return build_tracking_matrix(session, event_id, final_submissions_only=final_submissions_only)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("hackeval.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
