from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping

from devarena_api.errors import ValidationError


class BattleCriterion(str, Enum):
    CODE_QUALITY = "code_quality"
    PROJECT_COMPLEXITY = "project_complexity"
    SKILL_DIVERSITY = "skill_diversity"
    INNOVATION = "innovation"
    DOCUMENTATION = "documentation"
    TESTING = "testing"
    ARCHITECTURE = "architecture"
    PERFORMANCE = "performance"
    SECURITY = "security"
    MAINTAINABILITY = "maintainability"


ALL_CRITERIA: tuple[BattleCriterion, ...] = tuple(BattleCriterion)

CRITERION_WEIGHTS: dict[BattleCriterion, float] = {
    BattleCriterion.CODE_QUALITY: 1.5,
    BattleCriterion.PROJECT_COMPLEXITY: 1.25,
    BattleCriterion.SKILL_DIVERSITY: 1.0,
    BattleCriterion.INNOVATION: 1.0,
    BattleCriterion.DOCUMENTATION: 0.75,
    BattleCriterion.TESTING: 1.0,
    BattleCriterion.ARCHITECTURE: 1.25,
    BattleCriterion.PERFORMANCE: 0.75,
    BattleCriterion.SECURITY: 0.75,
    BattleCriterion.MAINTAINABILITY: 1.0,
}

# Per-criterion scores from the evaluator are on a 1-10 scale.
CRITERION_SCORE_MAX = 10.0


def parse_criteria(raw: Iterable[str] | None) -> list[BattleCriterion]:
    if raw is None:
        return list(ALL_CRITERIA)
    out: list[BattleCriterion] = []
    unknown: list[str] = []
    for item in raw:
        name = str(item or "").strip().lower()
        if not name:
            continue
        try:
            criterion = BattleCriterion(name)
        except ValueError:
            unknown.append(str(item))
            continue
        if criterion not in out:
            out.append(criterion)
    if unknown:
        raise ValidationError(
            f"Unknown battle criteria: {', '.join(unknown)}",
            details={
                "unknown": unknown,
                "allowed": [c.value for c in ALL_CRITERIA],
            },
        )
    return out or list(ALL_CRITERIA)


def weighted_total(
    breakdown: Mapping[str, float], criteria: Iterable[BattleCriterion]
) -> float:
    """Weighted 0-100 score over the judged criteria; missing scores count as 0."""
    crit = list(criteria) or list(ALL_CRITERIA)
    weight_sum = sum(CRITERION_WEIGHTS[c] for c in crit)
    if weight_sum <= 0:
        return 0.0
    acc = 0.0
    for c in crit:
        try:
            score = float(breakdown.get(c.value, 0.0) or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        score = max(0.0, min(CRITERION_SCORE_MAX, score))
        acc += CRITERION_WEIGHTS[c] * score
    return round(acc / (weight_sum * CRITERION_SCORE_MAX) * 100.0, 2)
