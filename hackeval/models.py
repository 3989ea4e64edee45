from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from hackeval.schemas import PhaseTarget, ProjectTarget, SubmissionTarget


class Base(DeclarativeBase):
    pass


def _fk(target: str, ondelete: str = "CASCADE") -> ForeignKey:
    return ForeignKey(target, ondelete=ondelete)


# ---------------------------------------------------------------------------
# Tenancy and event structure (provisioned by other services)
# ---------------------------------------------------------------------------


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), default="")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(Integer, _fk("tenants.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(255), default="")


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ai_evaluation_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_evaluation_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_evaluation_temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_evaluation_max_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    phases: Mapped[list[Phase]] = relationship("Phase", back_populates="event", cascade="all, delete-orphan", passive_deletes=True)
    teams: Mapped[list[Team]] = relationship("Team", back_populates="event", cascade="all, delete-orphan", passive_deletes=True)


class Phase(Base):
    __tablename__ = "phases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    view_start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    view_end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=1)
    is_elimination: Mapped[bool] = mapped_column(Boolean, default=False)

    event: Mapped[Event] = relationship("Event", back_populates="phases")
    tasks: Mapped[list[Task]] = relationship("Task", back_populates="phase", cascade="all, delete-orphan", passive_deletes=True)


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    phase_id: Mapped[int] = mapped_column(Integer, _fk("phases.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    delivery_type: Mapped[str] = mapped_column(String(10), default="file")  # text | file | url | video | audio | zip | none
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(10), default="draft")  # draft | active | closed
    order_index: Mapped[int] = mapped_column(Integer, default=1)
    phase_rubric_id: Mapped[int | None] = mapped_column(Integer, _fk("phase_rubrics.id", "SET NULL"), nullable=True)

    phase: Mapped[Phase] = relationship("Phase", back_populates="tasks")
    rubric: Mapped[PhaseRubric | None] = relationship("PhaseRubric", foreign_keys=[phase_rubric_id])


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    event: Mapped[Event] = relationship("Event", back_populates="teams")
    project: Mapped[Project | None] = relationship("Project", back_populates="team", uselist=False, passive_deletes=True)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    team_id: Mapped[int] = mapped_column(Integer, _fk("teams.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")

    team: Mapped[Team] = relationship("Team", back_populates="project")


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    task_id: Mapped[int] = mapped_column(Integer, _fk("tasks.id"), nullable=False, index=True)
    team_id: Mapped[int] = mapped_column(Integer, _fk("teams.id"), nullable=False, index=True)
    submitted_by: Mapped[int | None] = mapped_column(Integer, _fk("users.id", "SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(10), default="draft")  # draft | final
    type: Mapped[str] = mapped_column(String(15), default="provisional")  # provisional | final
    content: Mapped[str] = mapped_column(Text, default="")
    attachment_url: Mapped[str] = mapped_column(String(500), default="")
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    task: Mapped[Task] = relationship("Task")

    @property
    def is_final(self) -> bool:
        return self.status == "final" or self.type == "final"


# ---------------------------------------------------------------------------
# Rubric catalog
# ---------------------------------------------------------------------------


class PhaseRubric(Base):
    __tablename__ = "phase_rubrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, _fk("events.id"), nullable=False, index=True)
    phase_id: Mapped[int | None] = mapped_column(Integer, _fk("phases.id"), nullable=True, index=True)
    rubric_scope: Mapped[str] = mapped_column(String(10), default="phase")  # phase | project
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    scale_min: Mapped[int] = mapped_column(Integer, default=0)
    scale_max: Mapped[int] = mapped_column(Integer, default=100)
    model_preference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, _fk("users.id", "SET NULL"), nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, _fk("users.id", "SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    criteria: Mapped[list[RubricCriterion]] = relationship(
        "RubricCriterion", back_populates="rubric", cascade="all, delete-orphan", passive_deletes=True,
    )


class RubricCriterion(Base):
    __tablename__ = "phase_rubric_criteria"
    __table_args__ = (
        UniqueConstraint("rubric_id", "order_index", name="uq_rubric_criterion_order"),
        CheckConstraint("weight > 0", name="ck_rubric_criterion_weight_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    rubric_id: Mapped[int] = mapped_column(Integer, _fk("phase_rubrics.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    weight: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("1.00"))
    max_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=1)

    rubric: Mapped[PhaseRubric] = relationship("PhaseRubric", back_populates="criteria")


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------

_SCOPE_CHECK = (
    "(evaluation_scope = 'submission' AND submission_id IS NOT NULL"
    " AND phase_id IS NULL AND project_id IS NULL AND team_id IS NULL)"
    " OR (evaluation_scope = 'phase' AND phase_id IS NOT NULL AND team_id IS NOT NULL"
    " AND submission_id IS NULL AND project_id IS NULL)"
    " OR (evaluation_scope = 'project' AND project_id IS NOT NULL AND team_id IS NOT NULL"
    " AND submission_id IS NULL AND phase_id IS NULL)"
)


class Evaluation(Base):
    __tablename__ = "evaluations"
    __table_args__ = (
        CheckConstraint(_SCOPE_CHECK, name="ck_evaluation_scope_target"),
        CheckConstraint("status IN ('draft', 'final')", name="ck_evaluation_status"),
        Index(
            "uq_evaluation_final_target", "target_key", unique=True,
            sqlite_where=text("status = 'final'"),
            postgresql_where=text("status = 'final'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, _fk("tenants.id"), nullable=False)
    evaluation_scope: Mapped[str] = mapped_column(String(12), nullable=False)  # submission | phase | project
    submission_id: Mapped[int | None] = mapped_column(Integer, _fk("submissions.id"), nullable=True, index=True)
    phase_id: Mapped[int | None] = mapped_column(Integer, _fk("phases.id"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(Integer, _fk("projects.id"), nullable=True)
    team_id: Mapped[int | None] = mapped_column(Integer, _fk("teams.id"), nullable=True)
    target_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reviewer_id: Mapped[int] = mapped_column(Integer, _fk("users.id"), nullable=False)
    score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    comment: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(10), default="draft")  # draft | final
    source: Mapped[str] = mapped_column(String(12), default="manual")  # manual | ai_assisted
    rubric_snapshot_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Submissions a phase/project evaluation was based on. Rows go away with
    # the submission, so the list never names a deleted submission.
    submission_links: Mapped[list[EvaluationSubmission]] = relationship(
        "EvaluationSubmission", order_by="EvaluationSubmission.position",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def target(self) -> SubmissionTarget | PhaseTarget | ProjectTarget:
        if self.evaluation_scope == "submission":
            return SubmissionTarget(submission_id=self.submission_id)
        if self.evaluation_scope == "phase":
            return PhaseTarget(phase_id=self.phase_id, team_id=self.team_id)
        return ProjectTarget(project_id=self.project_id, team_id=self.team_id)

    @target.setter
    def target(self, target: SubmissionTarget | PhaseTarget | ProjectTarget) -> None:
        self.evaluation_scope = target.scope
        self.submission_id = getattr(target, "submission_id", None)
        self.phase_id = getattr(target, "phase_id", None)
        self.project_id = getattr(target, "project_id", None)
        self.team_id = getattr(target, "team_id", None)
        self.target_key = target.key

    @property
    def evaluated_submission_ids(self) -> list[int]:
        return [link.submission_id for link in self.submission_links]

    @evaluated_submission_ids.setter
    def evaluated_submission_ids(self, ids: list[int]) -> None:
        existing = {link.submission_id: link for link in self.submission_links}
        links = []
        for position, sub_id in enumerate(ids, start=1):
            link = existing.get(sub_id) or EvaluationSubmission(submission_id=sub_id)
            link.position = position
            links.append(link)
        self.submission_links = links

    @property
    def covered_submission_ids(self) -> list[int]:
        """Submissions this evaluation speaks for, whatever its scope."""
        if self.evaluation_scope == "submission":
            return [self.submission_id]
        return self.evaluated_submission_ids


class EvaluationSubmission(Base):
    __tablename__ = "evaluation_submissions"

    evaluation_id: Mapped[int] = mapped_column(Integer, _fk("evaluations.id"), primary_key=True)
    submission_id: Mapped[int] = mapped_column(Integer, _fk("submissions.id"), primary_key=True, index=True)
    position: Mapped[int] = mapped_column(Integer, default=1)
