"""Shared fixtures: an in-memory SQLite store seeded with one small event.

Event layout::

    Phase "Ideation" (order 1): "Pitch deck" (order 1), "Problem statement" (order 2)
    Phase "Build" (order 2):    "Prototype" (order 1)

    Teams: "alpha" (has a project), "Beta", "Gamma" (no submissions)

    alpha / Pitch deck:        sub_old (provisional), sub_final (final)
    alpha / Problem statement: sub_problem (provisional)
    Beta  / Pitch deck:        sub_beta (provisional)

A rubric (0-100, two criteria) is bound to "Ideation".
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hackeval.db import enable_sqlite_foreign_keys
from hackeval.models import (
    Base,
    Event,
    Phase,
    PhaseRubric,
    Project,
    RubricCriterion,
    Submission,
    Task,
    Team,
    Tenant,
    User,
)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(eng)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


def seed_event(session: Session) -> SimpleNamespace:
    tenant = Tenant(name="Acme Innovation", slug="acme")
    other_tenant = Tenant(name="Other", slug="other")
    session.add_all([tenant, other_tenant])
    session.flush()

    reviewer = User(tenant_id=tenant.id, name="Rita Reviewer", email="rita@acme.test")
    second_reviewer = User(tenant_id=tenant.id, name="Sam Second", email="sam@acme.test")
    session.add_all([reviewer, second_reviewer])

    event = Event(tenant_id=tenant.id, name="Acme Hackathon 2026")
    session.add(event)
    session.flush()

    ideation = Phase(tenant_id=tenant.id, event_id=event.id, name="Ideation", order_index=1)
    build = Phase(tenant_id=tenant.id, event_id=event.id, name="Build", order_index=2, is_elimination=True)
    session.add_all([ideation, build])
    session.flush()

    pitch = Task(tenant_id=tenant.id, event_id=event.id, phase_id=ideation.id,
                 title="Pitch deck", order_index=1, status="active")
    problem = Task(tenant_id=tenant.id, event_id=event.id, phase_id=ideation.id,
                   title="Problem statement", order_index=2, status="active", is_required=False)
    prototype = Task(tenant_id=tenant.id, event_id=event.id, phase_id=build.id,
                     title="Prototype", order_index=1, status="active")
    session.add_all([pitch, problem, prototype])

    beta = Team(tenant_id=tenant.id, event_id=event.id, name="Beta")
    alpha = Team(tenant_id=tenant.id, event_id=event.id, name="alpha")
    gamma = Team(tenant_id=tenant.id, event_id=event.id, name="Gamma")
    session.add_all([beta, alpha, gamma])
    session.flush()

    project = Project(tenant_id=tenant.id, event_id=event.id, team_id=alpha.id,
                      name="Solar Sharing", summary="Peer-to-peer solar energy marketplace")
    session.add(project)

    def submission(team, task, when, **kwargs):
        sub = Submission(tenant_id=tenant.id, event_id=event.id, task_id=task.id, team_id=team.id,
                         submitted_by=reviewer.id, submitted_at=when, **kwargs)
        session.add(sub)
        return sub

    sub_old = submission(alpha, pitch, datetime(2026, 3, 1, 10, 0), content="First draft of the deck")
    sub_final = submission(alpha, pitch, datetime(2026, 3, 1, 12, 0), content="Final deck",
                           status="final", type="final", attachment_url="https://files.test/deck.pdf")
    sub_problem = submission(alpha, problem, datetime(2026, 3, 2, 9, 0), content="Energy access problem")
    sub_beta = submission(beta, pitch, datetime(2026, 3, 1, 11, 0), content="Beta deck")
    session.flush()

    rubric = PhaseRubric(
        tenant_id=tenant.id, event_id=event.id, phase_id=ideation.id, rubric_scope="phase",
        name="Ideation rubric", scale_min=0, scale_max=100,
        criteria=[
            RubricCriterion(tenant_id=tenant.id, title="Innovation", weight=Decimal("2.00"), order_index=1),
            RubricCriterion(tenant_id=tenant.id, title="Clarity", weight=Decimal("1.00"),
                            max_score=Decimal("10"), order_index=2),
        ],
    )
    session.add(rubric)
    session.commit()

    return SimpleNamespace(
        tenant=tenant, other_tenant=other_tenant,
        reviewer=reviewer, second_reviewer=second_reviewer,
        event=event, ideation=ideation, build=build,
        pitch=pitch, problem=problem, prototype=prototype,
        alpha=alpha, beta=beta, gamma=gamma, project=project,
        sub_old=sub_old, sub_final=sub_final, sub_problem=sub_problem, sub_beta=sub_beta,
        rubric=rubric,
    )


@pytest.fixture()
def world(session) -> SimpleNamespace:
    return seed_event(session)
