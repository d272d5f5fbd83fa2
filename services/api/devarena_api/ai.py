"""Profile generator and comparative evaluator collaborators.

Both talk to the Gemini REST API in JSON response mode and validate the reply
with pydantic. Anything the model returns that does not validate is surfaced
as an ``UpstreamError``; the engine never consumes untyped model output.
"""

from __future__ import annotations

from typing import Any, Literal, Protocol, Sequence

import httpx
import orjson
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from devarena_api.core.config import Settings
from devarena_api.criteria import BattleCriterion, weighted_total
from devarena_api.errors import UpstreamError
from devarena_api.github import RepoSummary


class ScoredMetric(BaseModel):
    metric: str
    score: float = Field(ge=1, le=10)
    reason: str = ""


class TechStackItem(BaseModel):
    name: str
    type: Literal["Language", "Framework", "Database", "Tool", "Platform", "Library"]
    repo_count: int = 0


class ScoredRepo(BaseModel):
    name: str
    owner: str = ""
    description: str = ""
    url: str = ""
    significance_score: float = Field(default=1, ge=1, le=10)
    reason: str = ""


class DeveloperProfile(BaseModel):
    summary: str
    overall_score: float = Field(default=0, ge=0, le=100)
    skill_assessment: list[ScoredMetric] = Field(default_factory=list)
    tech_stack: list[TechStackItem] = Field(default_factory=list)
    development_style: list[ScoredMetric] = Field(default_factory=list)
    top_repos: list[ScoredRepo] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class SideScore(BaseModel):
    total: float = 0
    breakdown: dict[str, float] = Field(default_factory=dict)


class BattleEvaluation(BaseModel):
    winner: str
    reason: str
    challenger_score: SideScore
    opponent_score: SideScore
    highlights: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class ProfileGenerator(Protocol):
    model_name: str

    async def generate_profile(
        self, username: str, repos: Sequence[RepoSummary]
    ) -> tuple[DeveloperProfile, TokenUsage]: ...


class BattleEvaluator(Protocol):
    model_name: str

    async def evaluate_battle(
        self,
        challenger_profile: DeveloperProfile,
        opponent_profile: DeveloperProfile,
        challenger_username: str,
        opponent_username: str,
        criteria: Sequence[BattleCriterion],
    ) -> tuple[BattleEvaluation, TokenUsage]: ...


def resolve_winner(
    evaluation: BattleEvaluation,
    *,
    challenger_username: str,
    opponent_username: str,
    criteria: Sequence[BattleCriterion],
) -> tuple[BattleEvaluation, bool]:
    """Normalize the declared winner to one of the two usernames.

    Returns the (possibly rewritten) evaluation and whether the challenger won.
    A winner naming neither participant is decided by the weighted totals;
    ties go to the challenger.
    """
    declared = str(evaluation.winner or "").strip().lower()
    if declared == challenger_username.lower():
        return evaluation.model_copy(update={"winner": challenger_username}), True
    if declared == opponent_username.lower():
        return evaluation.model_copy(update={"winner": opponent_username}), False

    c_total = weighted_total(evaluation.challenger_score.breakdown, criteria)
    o_total = weighted_total(evaluation.opponent_score.breakdown, criteria)
    if c_total == 0 and o_total == 0:
        c_total = float(evaluation.challenger_score.total)
        o_total = float(evaluation.opponent_score.total)
    challenger_won = c_total >= o_total
    winner = challenger_username if challenger_won else opponent_username
    return evaluation.model_copy(update={"winner": winner}), challenger_won


def _validation_errors(exc: PydanticValidationError) -> list[Any]:
    return list(exc.errors(include_url=False, include_context=False))[:5]


def _profile_prompt(username: str, repos: Sequence[RepoSummary]) -> str:
    repo_lines = orjson.dumps([r.as_dict() for r in repos]).decode("utf-8")
    schema = orjson.dumps(DeveloperProfile.model_json_schema()).decode("utf-8")
    return (
        f"Build a scored developer profile for GitHub user '{username}' from these "
        f"repositories: {repo_lines}\n"
        f"Reply with a single JSON object matching this JSON schema: {schema}"
    )


def _battle_prompt(
    challenger_profile: DeveloperProfile,
    opponent_profile: DeveloperProfile,
    challenger_username: str,
    opponent_username: str,
    criteria: Sequence[BattleCriterion],
) -> str:
    schema = orjson.dumps(BattleEvaluation.model_json_schema()).decode("utf-8")
    return (
        f"Judge a developer battle between '{challenger_username}' (challenger) and "
        f"'{opponent_username}' (opponent). Criteria: "
        f"{', '.join(c.value for c in criteria)}. Score each criterion 1-10 in the "
        f"breakdown and give a 0-100 total.\n"
        f"Challenger profile: {challenger_profile.model_dump_json()}\n"
        f"Opponent profile: {opponent_profile.model_dump_json()}\n"
        f"Reply with a single JSON object matching this JSON schema: {schema}"
    )


class GeminiClient:
    """Implements both ``ProfileGenerator`` and ``BattleEvaluator``."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.model_name = model or self.settings.ai_model
        self._transport = transport

    async def _generate_json(self, *, prompt: str, model: str) -> tuple[Any, TokenUsage]:
        if not self.settings.ai_api_key:
            raise UpstreamError("AI API key is not configured", service="ai")
        url = f"{self.settings.ai_api_url.rstrip('/')}/models/{model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.ai_timeout_sec, transport=self._transport
            ) as client:
                resp = await client.post(
                    url,
                    content=orjson.dumps(body),
                    headers={
                        "Content-Type": "application/json",
                        "x-goog-api-key": str(self.settings.ai_api_key),
                    },
                )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"AI request failed: {exc}", service="ai") from exc

        if resp.status_code == 429:
            ra = resp.headers.get("Retry-After")
            try:
                retry_after = float(ra) if ra else 30.0
            except ValueError:
                retry_after = 30.0
            raise UpstreamError(
                "AI provider rate limit hit",
                service="ai",
                upstream_status=429,
                retry_after_sec=retry_after,
            )
        if not (200 <= resp.status_code < 300):
            raise UpstreamError(
                f"AI request failed ({resp.status_code})",
                service="ai",
                upstream_status=resp.status_code,
                details={"body": resp.text[:300]},
            )

        try:
            payload = orjson.loads(resp.content)
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
            obj = orjson.loads(str(text).encode("utf-8"))
        except (orjson.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(
                "AI response was not valid JSON", service="ai"
            ) from exc

        meta = payload.get("usageMetadata") or {}
        usage = TokenUsage(
            input_tokens=int(meta.get("promptTokenCount") or 0),
            output_tokens=int(meta.get("candidatesTokenCount") or 0),
            total_tokens=int(meta.get("totalTokenCount") or 0),
        )
        return obj, usage

    async def generate_profile(
        self, username: str, repos: Sequence[RepoSummary]
    ) -> tuple[DeveloperProfile, TokenUsage]:
        obj, usage = await self._generate_json(
            prompt=_profile_prompt(username, repos),
            model=self.settings.ai_profile_model,
        )
        try:
            return DeveloperProfile.model_validate(obj), usage
        except PydanticValidationError as exc:
            raise UpstreamError(
                f"AI returned an invalid profile for {username}",
                service="ai",
                details={"errors": _validation_errors(exc)},
            ) from exc

    async def evaluate_battle(
        self,
        challenger_profile: DeveloperProfile,
        opponent_profile: DeveloperProfile,
        challenger_username: str,
        opponent_username: str,
        criteria: Sequence[BattleCriterion],
    ) -> tuple[BattleEvaluation, TokenUsage]:
        obj, usage = await self._generate_json(
            prompt=_battle_prompt(
                challenger_profile,
                opponent_profile,
                challenger_username,
                opponent_username,
                criteria,
            ),
            model=self.model_name,
        )
        try:
            return BattleEvaluation.model_validate(obj), usage
        except PydanticValidationError as exc:
            raise UpstreamError(
                "AI returned an invalid battle evaluation",
                service="ai",
                details={"errors": _validation_errors(exc)},
            ) from exc
