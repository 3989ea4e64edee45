"""Pydantic value objects and request/response schemas for the hackeval API."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Evaluation targets (tagged union on ``scope``)
# ---------------------------------------------------------------------------

EvaluationScope = Literal["submission", "phase", "project"]
EvaluationStatus = Literal["draft", "final"]
EvaluationSource = Literal["manual", "ai_assisted"]


class _Target(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SubmissionTarget(_Target):
    scope: Literal["submission"] = "submission"
    submission_id: int

    @property
    def key(self) -> str:
        return f"submission:{self.submission_id}"


class PhaseTarget(_Target):
    scope: Literal["phase"] = "phase"
    phase_id: int
    team_id: int

    @property
    def key(self) -> str:
        return f"phase:{self.phase_id}:team:{self.team_id}"


class ProjectTarget(_Target):
    scope: Literal["project"] = "project"
    project_id: int
    team_id: int

    @property
    def key(self) -> str:
        return f"project:{self.project_id}:team:{self.team_id}"


EvaluationTarget = Annotated[
    Union[SubmissionTarget, PhaseTarget, ProjectTarget],
    Field(discriminator="scope"),
]


# ---------------------------------------------------------------------------
# Rubric snapshot (immutable copy stored on each evaluation)
# ---------------------------------------------------------------------------


class CriterionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    title: str
    description: str = ""
    weight: Decimal = Decimal("1.00")
    max_score: Decimal | None = None
    order_index: int = 1


class RubricSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    rubric_id: int | None = None
    name: str
    description: str = ""
    rubric_scope: Literal["phase", "project"] = "phase"
    scale_min: int = 0
    scale_max: int = 100
    criteria: tuple[CriterionSnapshot, ...] = ()


# ---------------------------------------------------------------------------
# Rubrics
# ---------------------------------------------------------------------------


class CriterionIn(BaseModel):
    title: str
    description: str = ""
    weight: Decimal | None = None
    max_score: Decimal | None = None
    order_index: int | None = None


class RubricCreate(BaseModel):
    name: str
    description: str = ""
    scale_min: int = 0
    scale_max: int = 100
    model_preference: str | None = None
    criteria: list[CriterionIn] = []


class RubricUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    scale_min: int | None = None
    scale_max: int | None = None
    model_preference: str | None = None
    criteria: list[CriterionIn] | None = None


class CriterionOut(BaseModel):
    id: int
    title: str
    description: str
    weight: Decimal
    max_score: Decimal | None = None
    order_index: int


class RubricOut(BaseModel):
    id: int
    event_id: int
    phase_id: int | None = None
    rubric_scope: str
    name: str
    description: str
    scale_min: int
    scale_max: int
    model_preference: str | None = None
    criteria: list[CriterionOut] = []


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class EvaluationCreate(BaseModel):
    target: EvaluationTarget
    comment: str = ""
    score: Decimal | None = None
    submission_ids: list[int] | None = None


class EvaluationPatch(BaseModel):
    comment: str | None = None
    score: Decimal | None = None
    submission_ids: list[int] | None = None
    status: EvaluationStatus | None = None


class AIEvaluationRequest(BaseModel):
    target: EvaluationTarget
    submission_ids: list[int] | None = None
    locale: str | None = None

    @field_validator("locale")
    @classmethod
    def locale_not_blank(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class EvaluationOut(BaseModel):
    id: int
    evaluation_scope: EvaluationScope
    target: EvaluationTarget
    reviewer_id: int
    status: EvaluationStatus
    source: EvaluationSource
    score: Decimal | None = None
    comment: str
    evaluated_submission_ids: list[int] = []
    rubric_snapshot: RubricSnapshot | None = None
    metadata: dict[str, Any] = {}
    created_at: datetime | None = None
    finalized_at: datetime | None = None


# ---------------------------------------------------------------------------
# Deliverables tracking
# ---------------------------------------------------------------------------


class TrackingPhase(BaseModel):
    id: int
    name: str
    order_index: int
    is_elimination: bool
    task_ids: list[int]


class TrackingColumn(BaseModel):
    phase_id: int
    phase_name: str
    task_id: int
    task_title: str
    order_index: int
    required: bool
    due_date: datetime | None = None


class TrackingTeam(BaseModel):
    id: int
    name: str
    project_id: int | None = None
    has_final_project_evaluation: bool
    phase_evaluations: dict[int, bool]
    submitted_count: int
    evaluated_count: int


class TrackingCell(BaseModel):
    team_id: int
    phase_id: int
    task_id: int
    submitted: bool
    submission_id: int | None = None
    submitted_at: datetime | None = None
    has_final_evaluation: bool
    has_pending_evaluation: bool
    final_evaluation_id: int | None = None


class TrackingMatrix(BaseModel):
    event_id: int
    final_submissions_only: bool
    phases: list[TrackingPhase]
    teams: list[TrackingTeam]
    columns: list[TrackingColumn]
    cells: list[TrackingCell]
