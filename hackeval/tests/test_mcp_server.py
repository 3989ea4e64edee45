"""MCP tools read the same store as the HTTP API."""
from __future__ import annotations

import json
from contextlib import contextmanager
from decimal import Decimal
from unittest.mock import patch

import pytest

from hackeval import mcp_server
from hackeval.evaluations import create_draft, promote_to_final
from hackeval.schemas import SubmissionTarget
from hackeval.scopes import resolve_target


@pytest.fixture()
def scoped(session_factory):
    @contextmanager
    def fake_scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    with patch("hackeval.mcp_server.session_scope", fake_scope):
        yield


class TestTools:
    def test_tracking_matrix(self, scoped, world):
        result = mcp_server.get_tracking_matrix(world.event.id)
        assert result["event_id"] == world.event.id
        assert [t["name"] for t in result["teams"]] == ["alpha", "Beta", "Gamma"]

    def test_tracking_unknown_event(self, scoped, world):
        assert mcp_server.get_tracking_matrix(9999)["error"] == "not_found"

    def test_get_rubric(self, scoped, world):
        result = mcp_server.get_rubric(world.event.id, task_id=world.pitch.id)
        assert result["name"] == "Ideation rubric"
        assert [c["title"] for c in result["criteria"]] == ["Innovation", "Clarity"]
        assert mcp_server.get_rubric(world.event.id)["error"] == "no_rubric_configured"

    def test_list_evaluations(self, scoped, session, world):
        draft = create_draft(session, resolve_target(session, SubmissionTarget(submission_id=world.sub_beta.id)),
                             world.reviewer.id, comment="Solid", score=60)
        promote_to_final(session, draft.id, world.reviewer.id)
        session.commit()

        result = mcp_server.list_evaluations("submission", submission_id=world.sub_beta.id)
        assert [e["id"] for e in result] == [draft.id]
        assert result[0]["status"] == "final"
        assert Decimal(result[0]["score"]) == Decimal("60")

    def test_list_evaluations_bad_refs(self, scoped, world):
        assert mcp_server.list_evaluations("phase", phase_id=world.ideation.id)["error"] == "invalid_scope"


class TestOverview:
    def test_lists_events(self, scoped, world):
        overview = json.loads(mcp_server.hackeval_overview())
        assert [e["name"] for e in overview["events"]] == [world.event.name]
