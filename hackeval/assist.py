"""AI-assisted evaluation: a scoring oracle behind a narrow async contract.

The oracle receives the rubric snapshot and a dossier of the target's
submissions and returns a comment, an optional overall score and optional
per-criterion feedback. It never touches the database; the caller stores the
result as a draft.

The default oracle, :class:`LLMAssistant`, calls Anthropic or OpenAI through
:class:`LLMClient` and validates the JSON it gets back::

    {"overallScore": 72, "overallFeedback": "...",
     "criteria": [{"criterionId": 3, "score": 8, "feedback": "..."}]}

When ``overallScore`` is missing the weighted criterion score is used.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

from hackeval import errors
from hackeval.rubrics import weighted_score
from hackeval.schemas import PhaseTarget, ProjectTarget, RubricSnapshot, SubmissionTarget

log = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.2


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@dataclass
class SubmissionBrief:
    """What the oracle gets to see of one submission."""
    id: int
    task_title: str
    task_description: str = ""
    phase_name: str = ""
    content: str = ""
    attachment_url: str = ""
    submitted_at: datetime | None = None
    is_final: bool = False


@dataclass
class AssistRequest:
    target: SubmissionTarget | PhaseTarget | ProjectTarget
    rubric_snapshot: RubricSnapshot
    locale: str
    submissions: list[SubmissionBrief] = field(default_factory=list)
    header: list[str] = field(default_factory=list)
    evaluated_submission_ids: list[int] = field(default_factory=list)
    # Per-event overrides
    prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class AssistResult:
    comment: str
    score: Decimal | None = None
    evaluated_submission_ids: list[int] | None = None
    criteria: list[dict[str, Any]] = field(default_factory=list)
    model: str = ""


@runtime_checkable
class ScoringOracle(Protocol):
    async def generate(self, request: AssistRequest) -> AssistResult: ...


async def generate_with_timeout(
    oracle: ScoringOracle, request: AssistRequest, timeout: float,
) -> AssistResult:
    """Run the oracle with a deadline. Any oracle failure becomes ``AdapterUnavailable``."""
    try:
        return await asyncio.wait_for(oracle.generate(request), timeout=timeout)
    except asyncio.TimeoutError as exc:
        log.warning("Scoring oracle timed out after %ss for %s", timeout, request.target.key)
        raise errors.AdapterUnavailable(f"AI evaluation timed out after {timeout:g}s") from exc
    except LLMCallError as exc:
        log.warning("Scoring oracle failed for %s: %s", request.target.key, exc)
        raise errors.AdapterUnavailable(f"AI evaluation failed: {exc}") from exc
    except errors.HackevalError:
        raise
    except Exception as exc:
        log.warning("Scoring oracle raised %s for %s: %s",
                    type(exc).__name__, request.target.key, exc, exc_info=True)
        raise errors.AdapterUnavailable(f"AI evaluation failed: {exc}") from exc


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI.

    Model, temperature and max tokens can be overridden per call so an
    event's AI settings apply to a single evaluation. Replies that do not
    decode to a JSON object raise a non-retryable :class:`LLMCallError`.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(
        self,
        system: str,
        user: str,
        *,
        model: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        model = model or self.model
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned {type(parsed).__name__}, expected an object")
        return parsed


# ---------------------------------------------------------------------------
# Prompt and dossier
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are an expert evaluator of innovation programs and hackathons who applies \
structured rubrics objectively.

Score the team's deliverables against every criterion of the rubric and give \
specific, improvement-oriented feedback that cites evidence from the submissions.
"""

# Appended to every system prompt, including per-event custom ones.
RESPONSE_FORMAT = """\
Scores must respect the rubric range: the global scale for the overall score, \
and 0..max for a criterion that declares a max, otherwise the global scale.

Respond with ONLY valid JSON:
{
  "overallScore": <number>,
  "overallFeedback": "<feedback>",
  "criteria": [
    {"criterionId": <number>, "score": <number>, "feedback": "<feedback>"}
  ]
}
"""

_SUBMISSION_FIELDS: list[tuple[str, str]] = [
    ("PHASE", "phase_name"),
    ("TASK DESCRIPTION", "task_description"),
    ("SUBMITTED AT", "submitted_at"),
    ("FINAL VERSION", "is_final"),
    ("ATTACHMENT", "attachment_url"),
]


def _build_dossier(obj, fields: list[tuple[str, str]], header: list[str] | None = None) -> str:
    """Render ``(label, attr)`` pairs of ``obj`` as ``LABEL: value`` lines, skipping empty ones."""
    sections: list[str] = list(header or [])
    for label, attr in fields:
        val = getattr(obj, attr, None)
        if val:
            if isinstance(val, bool):
                sections.append(label)
            else:
                sections.append(f"{label}: {val}")
    return "\n".join(sections)


def build_rubric_section(snapshot: RubricSnapshot) -> str:
    lines = [
        f"RUBRIC: {snapshot.name}",
        f"GLOBAL SCALE: {snapshot.scale_min} - {snapshot.scale_max}",
    ]
    if snapshot.description:
        lines.append(f"RUBRIC DESCRIPTION: {snapshot.description}")
    lines.append("CRITERIA:")
    for c in snapshot.criteria:
        bound = f", max {c.max_score}" if c.max_score is not None else ""
        lines.append(
            f"- [criterionId {c.id}] {c.title} (weight {c.weight}{bound}): "
            f"{c.description or 'No additional description'}"
        )
    return "\n".join(lines)


def build_submission_dossier(request: AssistRequest) -> str:
    """Assemble the rubric plus every submission under evaluation."""
    sections = [f"REQUIRED RESPONSE LANGUAGE: {request.locale}", *request.header, "",
                build_rubric_section(request.rubric_snapshot)]
    if not request.submissions:
        sections.append("\nNo submissions were delivered for this target.")
    for sub in request.submissions:
        sections.append(f"\n--- SUBMISSION {sub.id}: {sub.task_title} ---")
        details = _build_dossier(sub, _SUBMISSION_FIELDS)
        if details:
            sections.append(details)
        sections.append(f"CONTENT:\n{sub.content or 'No text provided'}")
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Response validation
# ---------------------------------------------------------------------------


def _number(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _validate_criteria(raw: Any, snapshot: RubricSnapshot) -> list[dict[str, Any]]:
    """Keep criterion entries that name a rubric criterion and carry a numeric score."""
    if not isinstance(raw, list):
        return []
    known = {c.id: c for c in snapshot.criteria if c.id is not None}
    validated: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            criterion_id = int(item.get("criterionId"))
        except (TypeError, ValueError):
            log.warning("Dropping criterion feedback without a usable id: %r", item)
            continue
        if criterion_id not in known:
            log.warning("Dropping feedback for unknown criterion %s", criterion_id)
            continue
        validated.append({
            "criterion_id": criterion_id,
            "title": known[criterion_id].title,
            "score": _number(item.get("score")),
            "feedback": str(item.get("feedback") or ""),
        })
    return validated


def validate_response(raw: dict[str, Any], snapshot: RubricSnapshot) -> tuple[str, Decimal | None, list[dict[str, Any]]]:
    """Normalize an oracle payload into ``(comment, score, criteria)``.

    The overall score is not range-checked here; the lifecycle manager
    rejects out-of-range scores when the draft is written.
    """
    criteria = _validate_criteria(raw.get("criteria"), snapshot)
    score = _number(raw.get("overallScore"))
    if raw.get("overallScore") is not None and score is None:
        log.warning("Ignoring non-numeric overallScore %r", raw.get("overallScore"))
    if score is None:
        score = weighted_score(
            snapshot, {c["criterion_id"]: c["score"] for c in criteria if c["score"] is not None},
        )
    comment = str(raw.get("overallFeedback") or "").strip()
    return comment, score, criteria


# ---------------------------------------------------------------------------
# Default oracle
# ---------------------------------------------------------------------------


class LLMAssistant:
    """Scoring oracle backed by :class:`LLMClient`."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def generate(self, request: AssistRequest) -> AssistResult:
        client = self.client
        system = f"{(request.prompt or '').strip() or DEFAULT_SYSTEM_PROMPT}\n{RESPONSE_FORMAT}"
        raw = await client.call(
            system,
            build_submission_dossier(request),
            model=request.model,
            temperature=request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            max_tokens=request.max_tokens or DEFAULT_MAX_TOKENS,
        )
        comment, score, criteria = validate_response(raw, request.rubric_snapshot)
        return AssistResult(
            comment=comment,
            score=score,
            evaluated_submission_ids=list(request.evaluated_submission_ids),
            criteria=criteria,
            model=request.model or client.model,
        )
