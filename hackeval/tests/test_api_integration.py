"""Integration tests for the FastAPI endpoints.

Uses TestClient over an in-memory SQLite database shared through StaticPool.
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from hackeval import notifications
from hackeval.assist import AssistResult
from hackeval.errors import AdapterUnavailable


@pytest.fixture()
def client(session_factory):
    """FastAPI TestClient using the in-memory database."""
    from hackeval.app import app, db_session

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    # The lifespan would open the configured database; tests never touch it.
    with patch("hackeval.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client, world):
    return client, world


@pytest.fixture()
def received():
    notices: list[notifications.FinalEvaluationNotice] = []
    notifications.register_listener(notices.append)
    yield notices
    notifications.clear_listeners()


def _as_reviewer(world, reviewer=None) -> dict:
    return {"X-Reviewer-Id": str((reviewer or world.reviewer).id), "X-Tenant-Id": str(world.tenant.id)}


class TestRubricEndpoints:
    def test_create_and_list(self, seeded):
        c, world = seeded
        resp = c.post(
            f"/api/events/{world.event.id}/phases/{world.build.id}/rubrics",
            json={"name": "Build rubric", "scale_max": 10,
                  "criteria": [{"title": "Working demo", "weight": 3}, {"title": "Code quality"}]},
            headers=_as_reviewer(world),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["phase_id"] == world.build.id
        assert [c_["order_index"] for c_ in body["criteria"]] == [1, 2]
        assert Decimal(body["criteria"][0]["weight"]) == Decimal("3")

        listed = c.get(f"/api/events/{world.event.id}/phases/{world.build.id}/rubrics")
        assert [r["name"] for r in listed.json()] == ["Build rubric"]

    def test_create_invalid_weight(self, seeded):
        c, world = seeded
        resp = c.post(
            f"/api/events/{world.event.id}/phases/{world.build.id}/rubrics",
            json={"name": "Bad", "criteria": [{"title": "Zero", "weight": 0}]},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_get_rubric_for_task(self, seeded):
        c, world = seeded
        resp = c.get(f"/api/events/{world.event.id}/rubric", params={"task_id": world.pitch.id})
        assert resp.status_code == 200
        assert resp.json()["id"] == world.rubric.id
        none = c.get(f"/api/events/{world.event.id}/rubric", params={"phase_id": world.build.id})
        assert none.json() is None

    def test_project_rubric(self, seeded):
        c, world = seeded
        resp = c.post(f"/api/events/{world.event.id}/rubrics/project",
                      json={"name": "Project", "criteria": [{"title": "Viability"}]})
        assert resp.status_code == 201
        assert resp.json()["rubric_scope"] == "project"
        assert c.get(f"/api/events/{world.event.id}/rubric").json()["name"] == "Project"

    def test_update_and_delete(self, seeded):
        c, world = seeded
        resp = c.put(f"/api/rubrics/{world.rubric.id}", json={"name": "Renamed"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Renamed"
        assert len(resp.json()["criteria"]) == 2
        assert c.delete(f"/api/rubrics/{world.rubric.id}").status_code == 204
        assert c.delete(f"/api/rubrics/{world.rubric.id}").status_code == 404

    def test_other_tenant_cannot_see_event(self, seeded):
        c, world = seeded
        resp = c.get(f"/api/events/{world.event.id}/tracking", headers={"X-Tenant-Id": str(world.other_tenant.id)})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"


class TestEvaluationEndpoints:
    def test_reviewer_header_required(self, seeded):
        c, world = seeded
        resp = c.post("/api/evaluations", json={"target": {"scope": "submission", "submission_id": world.sub_final.id}})
        assert resp.status_code == 403
        assert resp.json()["error"] == "permission_denied"

    def test_malformed_target(self, seeded):
        c, world = seeded
        resp = c.post("/api/evaluations", json={"target": {"scope": "phase", "phase_id": world.ideation.id}},
                      headers=_as_reviewer(world))
        assert resp.status_code == 422

    def test_draft_then_finalize(self, seeded, received):
        c, world = seeded
        target = {"scope": "phase", "phase_id": world.ideation.id, "team_id": world.alpha.id}
        resp = c.post("/api/evaluations", json={"target": target, "comment": "Nice", "score": 65},
                      headers=_as_reviewer(world))
        assert resp.status_code == 201
        draft = resp.json()
        assert draft["status"] == "draft"
        assert draft["target"] == target
        assert draft["evaluated_submission_ids"] == [world.sub_final.id, world.sub_problem.id]
        assert draft["rubric_snapshot"]["name"] == "Ideation rubric"

        resp = c.post(f"/api/evaluations/{draft['id']}/finalize", json={"comment": "Nice, final"},
                      headers=_as_reviewer(world))
        assert resp.status_code == 200
        final = resp.json()
        assert final["status"] == "final"
        assert final["comment"] == "Nice, final"
        assert [n.evaluation_id for n in received] == [draft["id"]]

        current = c.get("/api/evaluations/current", params={
            "scope": "phase", "phase_id": world.ideation.id, "team_id": world.alpha.id,
        })
        assert current.json()["id"] == draft["id"]

    def test_second_final_conflicts(self, seeded):
        c, world = seeded
        target = {"scope": "submission", "submission_id": world.sub_beta.id}
        first = c.post("/api/evaluations", json={"target": target, "score": 7}, headers=_as_reviewer(world)).json()
        second = c.post("/api/evaluations", json={"target": target, "score": 3},
                        headers=_as_reviewer(world, world.second_reviewer)).json()
        assert c.post(f"/api/evaluations/{first['id']}/finalize", headers=_as_reviewer(world)).status_code == 200
        resp = c.post(f"/api/evaluations/{second['id']}/finalize", headers=_as_reviewer(world, world.second_reviewer))
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

        listed = c.get("/api/evaluations", params={"scope": "submission", "submission_id": world.sub_beta.id,
                                                   "status": "final"})
        assert [e["id"] for e in listed.json()] == [first["id"]]

    def test_out_of_range_score(self, seeded):
        c, world = seeded
        resp = c.post("/api/evaluations", json={
            "target": {"scope": "submission", "submission_id": world.sub_final.id}, "score": 101,
        }, headers=_as_reviewer(world))
        assert resp.status_code == 422

    def test_patch_draft_and_promote(self, seeded, received):
        c, world = seeded
        target = {"scope": "submission", "submission_id": world.sub_final.id}
        draft = c.post("/api/evaluations", json={"target": target}, headers=_as_reviewer(world)).json()
        resp = c.patch(f"/api/evaluations/{draft['id']}", json={"comment": "edited"}, headers=_as_reviewer(world))
        assert resp.json()["comment"] == "edited"
        assert received == []
        resp = c.patch(f"/api/evaluations/{draft['id']}", json={"status": "final", "score": 88},
                       headers=_as_reviewer(world))
        assert resp.json()["status"] == "final"
        assert len(received) == 1
        resp = c.patch(f"/api/evaluations/{draft['id']}", json={"comment": "late"}, headers=_as_reviewer(world))
        assert resp.status_code == 409

    def test_patch_by_other_reviewer(self, seeded):
        c, world = seeded
        draft = c.post("/api/evaluations", json={"target": {"scope": "submission", "submission_id": world.sub_final.id}},
                       headers=_as_reviewer(world)).json()
        resp = c.patch(f"/api/evaluations/{draft['id']}", json={"comment": "mine now"},
                       headers=_as_reviewer(world, world.second_reviewer))
        assert resp.status_code == 403

    def test_revise_final(self, seeded):
        c, world = seeded
        target = {"scope": "submission", "submission_id": world.sub_final.id}
        draft = c.post("/api/evaluations", json={"target": target, "score": 50}, headers=_as_reviewer(world)).json()
        c.post(f"/api/evaluations/{draft['id']}/finalize", headers=_as_reviewer(world))
        resp = c.put(f"/api/evaluations/{draft['id']}/final", json={"score": 55}, headers=_as_reviewer(world))
        assert resp.status_code == 200
        assert Decimal(resp.json()["score"]) == Decimal("55")
        assert resp.json()["metadata"]["revisions"] == 1

    def test_get_missing(self, seeded):
        c, _ = seeded
        resp = c.get("/api/evaluations/999")
        assert resp.status_code == 404


class TestAIEndpoint:
    def test_ai_draft(self, seeded):
        c, world = seeded
        result = AssistResult(comment="AI says good", score=Decimal("77"), model="test-model")
        with patch("hackeval.services.LLMAssistant") as mock_cls:
            mock_cls.return_value.generate = AsyncMock(return_value=result)
            resp = c.post("/api/evaluations/ai", json={
                "target": {"scope": "submission", "submission_id": world.sub_final.id}, "locale": "en-US",
            }, headers=_as_reviewer(world))
        assert resp.status_code == 201
        body = resp.json()
        assert body["source"] == "ai_assisted"
        assert body["status"] == "draft"
        assert body["metadata"]["locale"] == "en-US"

    def test_ai_without_rubric(self, seeded):
        c, world = seeded
        resp = c.post("/api/evaluations/ai", json={
            "target": {"scope": "project", "project_id": world.project.id, "team_id": world.alpha.id},
        }, headers=_as_reviewer(world))
        assert resp.status_code == 409
        assert resp.json()["error"] == "no_rubric_configured"

    def test_ai_timeout_is_503(self, seeded):
        c, world = seeded
        with patch("hackeval.services.generate_with_timeout",
                   AsyncMock(side_effect=AdapterUnavailable("AI evaluation timed out after 60s"))):
            resp = c.post("/api/evaluations/ai", json={
                "target": {"scope": "submission", "submission_id": world.sub_final.id},
            }, headers=_as_reviewer(world))
        assert resp.status_code == 503
        assert resp.json()["error"] == "adapter_unavailable"
        assert "Retry-After" in resp.headers


    def test_ai_unexpected_failure_is_503(self, seeded):
        c, world = seeded
        with patch("hackeval.services.LLMAssistant") as mock_cls:
            mock_cls.return_value.generate = AsyncMock(side_effect=ConnectionError("connection reset"))
            resp = c.post("/api/evaluations/ai", json={
                "target": {"scope": "submission", "submission_id": world.sub_final.id},
            }, headers=_as_reviewer(world))
        assert resp.status_code == 503
        assert resp.json()["error"] == "adapter_unavailable"
        assert resp.headers["Retry-After"] == "30"


class TestTrackingEndpoint:
    def test_matrix(self, seeded):
        c, world = seeded
        resp = c.get(f"/api/events/{world.event.id}/tracking", params={"final_submissions_only": True})
        assert resp.status_code == 200
        body = resp.json()
        assert body["final_submissions_only"] is True
        assert [t["name"] for t in body["teams"]] == ["alpha", "Beta", "Gamma"]
        assert len(body["cells"]) == 3 * len(body["columns"])


class TestNotifications:
    def test_failing_listener_is_dropped(self, received):
        def broken(notice):
            raise RuntimeError("mail server down")

        notifications.register_listener(broken)
        notice = notifications.FinalEvaluationNotice(
            evaluation_id=1, tenant_id=1, evaluation_scope="submission", target_key="submission:1",
            team_id=None, submission_id=1, reviewer_id=1, score=None,
        )
        assert notifications.dispatch_final_evaluation(notice) == 1
        assert received == [notice]

        notifications.unregister_listener(broken)
        assert notifications.dispatch_final_evaluation(notice) == 1
        assert received == [notice, notice]
