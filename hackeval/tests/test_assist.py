"""AI assist adapter and the AI-assisted draft flow."""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from hackeval import errors, services
from hackeval.assist import (
    AssistRequest,
    AssistResult,
    LLMAssistant,
    LLMCallError,
    LLMClient,
    build_submission_dossier,
    generate_with_timeout,
    validate_response,
)
from hackeval.models import Evaluation
from hackeval.rubrics import build_snapshot
from hackeval.schemas import PhaseTarget, ProjectTarget, SubmissionTarget


def _request(world, **overrides) -> AssistRequest:
    fields = dict(
        target=SubmissionTarget(submission_id=world.sub_final.id),
        rubric_snapshot=build_snapshot(world.rubric),
        locale="es-ES",
    )
    fields.update(overrides)
    return AssistRequest(**fields)


class SlowOracle:
    async def generate(self, request):
        await asyncio.sleep(5)
        return AssistResult(comment="too late")


class BrokenOracle:
    async def generate(self, request):
        raise ConnectionError("oracle host unreachable")


class FixedOracle:
    def __init__(self, result: AssistResult):
        self.result = result
        self.calls: list[AssistRequest] = []

    async def generate(self, request):
        self.calls.append(request)
        return self.result


class TestValidateResponse:
    def test_overall_score_and_feedback(self, world):
        snapshot = build_snapshot(world.rubric)
        innovation = snapshot.criteria[0].id
        comment, score, criteria = validate_response({
            "overallScore": 72, "overallFeedback": " Clear pitch ",
            "criteria": [{"criterionId": innovation, "score": 80, "feedback": "Novel"}],
        }, snapshot)
        assert comment == "Clear pitch"
        assert score == Decimal("72")
        assert criteria == [{"criterion_id": innovation, "title": "Innovation",
                             "score": Decimal("80"), "feedback": "Novel"}]

    def test_falls_back_to_weighted_criteria(self, world):
        snapshot = build_snapshot(world.rubric)
        innovation, clarity = (c.id for c in snapshot.criteria)
        _, score, _ = validate_response({
            "overallFeedback": "ok",
            "criteria": [
                {"criterionId": innovation, "score": 80},
                {"criterionId": clarity, "score": 5},
            ],
        }, snapshot)
        # Innovation weight 2 at 80, Clarity weight 1 at 5/10 -> 50
        assert score == Decimal("70.00")

    def test_drops_unknown_criteria(self, world):
        snapshot = build_snapshot(world.rubric)
        _, score, criteria = validate_response({
            "criteria": [{"criterionId": 9999, "score": 3}, {"criterionId": "x"}, "junk"],
        }, snapshot)
        assert criteria == []
        assert score is None


class TestDossier:
    def test_includes_rubric_and_submission(self, world):
        request = _request(world, header=["TEAM: alpha"], submissions=[services._brief(world.sub_final)])
        dossier = build_submission_dossier(request)
        assert "REQUIRED RESPONSE LANGUAGE: es-ES" in dossier
        assert "TEAM: alpha" in dossier
        assert "RUBRIC: Ideation rubric" in dossier
        assert "Innovation (weight 2.00)" in dossier
        assert "Final deck" in dossier
        assert "ATTACHMENT: https://files.test/deck.pdf" in dossier
        assert "FINAL VERSION" in dossier

    def test_empty_submissions(self, world):
        assert "No submissions were delivered" in build_submission_dossier(_request(world))


class TestGenerateWithTimeout:
    @pytest.mark.asyncio
    async def test_timeout_becomes_adapter_unavailable(self, world):
        with pytest.raises(errors.AdapterUnavailable) as exc_info:
            await generate_with_timeout(SlowOracle(), _request(world), timeout=0.05)
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_llm_error_becomes_adapter_unavailable(self, world):
        oracle = MagicMock()
        oracle.generate = AsyncMock(side_effect=LLMCallError("boom", retryable=True))
        with pytest.raises(errors.AdapterUnavailable):
            await generate_with_timeout(oracle, _request(world), timeout=1)

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_adapter_unavailable(self, world):
        with pytest.raises(errors.AdapterUnavailable) as exc_info:
            await generate_with_timeout(BrokenOracle(), _request(world), timeout=1)
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_hackeval_errors_pass_through(self, world):
        oracle = MagicMock()
        oracle.generate = AsyncMock(side_effect=errors.ValidationError("bad payload"))
        with pytest.raises(errors.ValidationError):
            await generate_with_timeout(oracle, _request(world), timeout=1)

    @pytest.mark.asyncio
    async def test_passes_result_through(self, world):
        result = AssistResult(comment="fine", score=Decimal("50"))
        assert await generate_with_timeout(FixedOracle(result), _request(world), timeout=1) is result


class TestLLMAssistant:
    @pytest.mark.asyncio
    async def test_uses_event_overrides(self, world):
        client = MagicMock(spec=LLMClient)
        client.model = "default-model"
        client.call = AsyncMock(return_value={"overallScore": 64, "overallFeedback": "Promising"})
        request = _request(world, prompt="Be strict.", model="event-model", temperature=0.7,
                           max_tokens=500, evaluated_submission_ids=[world.sub_final.id])
        result = await LLMAssistant(client).generate(request)

        assert result.comment == "Promising"
        assert result.score == Decimal("64")
        assert result.model == "event-model"
        assert result.evaluated_submission_ids == [world.sub_final.id]
        system, user = client.call.call_args.args
        assert system.startswith("Be strict.")
        assert "overallScore" in system
        assert "RUBRIC: Ideation rubric" in user
        assert client.call.call_args.kwargs == {"model": "event-model", "temperature": 0.7, "max_tokens": 500}


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_anthropic_extracts_fenced_json(self):
        with patch("anthropic.AsyncAnthropic") as mock_cls:
            response = MagicMock()
            response.content = [MagicMock(text='```json\n{"overallScore": 5}\n```')]
            mock_cls.return_value.messages.create = AsyncMock(return_value=response)
            client = LLMClient(provider="anthropic", api_key="test")
            assert await client.call("sys", "user") == {"overallScore": 5}

    @pytest.mark.asyncio
    async def test_invalid_json_is_not_retryable(self):
        with patch("anthropic.AsyncAnthropic") as mock_cls:
            response = MagicMock()
            response.content = [MagicMock(text="not json")]
            mock_cls.return_value.messages.create = AsyncMock(return_value=response)
            client = LLMClient(provider="anthropic", api_key="test")
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("sys", "user")
            assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_api_failure_is_retryable(self):
        with patch("openai.AsyncOpenAI") as mock_cls:
            mock_cls.return_value.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))
            client = LLMClient(provider="openai", api_key="test")
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("sys", "user")
            assert exc_info.value.retryable is True

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")


class TestRunAIEvaluation:
    @pytest.mark.asyncio
    async def test_stores_ai_assisted_draft(self, session, world):
        world.event.ai_evaluation_model = "event-model"
        session.commit()
        oracle = FixedOracle(AssistResult(
            comment="Strong problem framing", score=Decimal("81"), model="event-model",
            criteria=[{"criterion_id": 1, "title": "Innovation", "score": Decimal("80"), "feedback": "x"}],
        ))
        target = PhaseTarget(phase_id=world.ideation.id, team_id=world.alpha.id)
        evaluation = await services.run_ai_evaluation(session, target, world.reviewer.id,
                                                      oracle=oracle, locale="en-GB")
        session.commit()

        assert evaluation.status == "draft"
        assert evaluation.source == "ai_assisted"
        assert evaluation.score == Decimal("81.00")
        assert evaluation.evaluated_submission_ids == [world.sub_final.id, world.sub_problem.id]
        metadata = json.loads(evaluation.metadata_json)
        assert metadata["locale"] == "en-GB"
        assert metadata["model"] == "event-model"
        assert metadata["criteria"][0]["title"] == "Innovation"

        request = oracle.calls[0]
        assert request.model == "event-model"
        assert [s.id for s in request.submissions] == [world.sub_final.id, world.sub_problem.id]

    @pytest.mark.asyncio
    async def test_no_rubric_raises_before_calling_oracle(self, session, world):
        oracle = FixedOracle(AssistResult(comment="unused"))
        target = ProjectTarget(project_id=world.project.id, team_id=world.alpha.id)
        with pytest.raises(errors.NoRubricConfigured) as exc_info:
            await services.run_ai_evaluation(session, target, world.reviewer.id, oracle=oracle)
        assert exc_info.value.status_code == 409
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_timeout_persists_nothing(self, session, world):
        target = SubmissionTarget(submission_id=world.sub_final.id)
        with pytest.raises(errors.AdapterUnavailable):
            await services.run_ai_evaluation(session, target, world.reviewer.id,
                                             oracle=SlowOracle(), timeout=0.05)
        assert session.execute(select(Evaluation)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_failing_oracle_persists_nothing(self, session, world):
        target = SubmissionTarget(submission_id=world.sub_final.id)
        with pytest.raises(errors.AdapterUnavailable):
            await services.run_ai_evaluation(session, target, world.reviewer.id, oracle=BrokenOracle())
        assert session.execute(select(Evaluation)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_unknown_provider_is_adapter_unavailable(self, session, world, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "bogus")
        target = SubmissionTarget(submission_id=world.sub_final.id)
        with pytest.raises(errors.AdapterUnavailable) as exc_info:
            await services.run_ai_evaluation(session, target, world.reviewer.id)
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert session.execute(select(Evaluation)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_out_of_range_ai_score_persists_nothing(self, session, world):
        target = SubmissionTarget(submission_id=world.sub_final.id)
        oracle = FixedOracle(AssistResult(comment="generous", score=Decimal("140")))
        with pytest.raises(errors.ValidationError):
            await services.run_ai_evaluation(session, target, world.reviewer.id, oracle=oracle)
        assert session.execute(select(Evaluation)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_submission_scope_sends_only_that_submission(self, session, world):
        oracle = FixedOracle(AssistResult(comment="ok", score=Decimal("40")))
        target = SubmissionTarget(submission_id=world.sub_old.id)
        evaluation = await services.run_ai_evaluation(session, target, world.reviewer.id, oracle=oracle)
        assert [s.id for s in oracle.calls[0].submissions] == [world.sub_old.id]
        assert evaluation.evaluated_submission_ids == []
