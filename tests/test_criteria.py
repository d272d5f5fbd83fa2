from __future__ import annotations

import pytest

from devarena_api.criteria import (
    ALL_CRITERIA,
    CRITERION_WEIGHTS,
    BattleCriterion,
    parse_criteria,
    weighted_total,
)
from devarena_api.errors import ValidationError


def test_every_criterion_has_a_weight() -> None:
    assert set(CRITERION_WEIGHTS) == set(BattleCriterion)
    assert len(ALL_CRITERIA) == 10


def test_missing_or_empty_criteria_default_to_all() -> None:
    assert parse_criteria(None) == list(ALL_CRITERIA)
    assert parse_criteria([]) == list(ALL_CRITERIA)
    assert parse_criteria(["", "  "]) == list(ALL_CRITERIA)


def test_parse_normalizes_dedupes_and_keeps_order() -> None:
    got = parse_criteria(["Testing", "code_quality", "testing", " SECURITY "])
    assert got == [BattleCriterion.TESTING, BattleCriterion.CODE_QUALITY, BattleCriterion.SECURITY]


def test_unknown_criteria_are_rejected() -> None:
    with pytest.raises(ValidationError) as ei:
        parse_criteria(["testing", "vibes", "rizz"])
    assert ei.value.details["unknown"] == ["vibes", "rizz"]
    assert "testing" in ei.value.details["allowed"]
    assert ei.value.status_code == 422


def test_weighted_total_is_on_a_0_to_100_scale() -> None:
    perfect = {c.value: 10 for c in ALL_CRITERIA}
    assert weighted_total(perfect, ALL_CRITERIA) == 100.0
    assert weighted_total({}, ALL_CRITERIA) == 0.0


def test_weighted_total_respects_weights_and_clamps() -> None:
    crit = [BattleCriterion.CODE_QUALITY, BattleCriterion.DOCUMENTATION]
    # code_quality weighs 1.5, documentation 0.75
    score = weighted_total({"code_quality": 10, "documentation": 0}, crit)
    assert score == pytest.approx(66.67, abs=0.01)
    assert weighted_total({"code_quality": 50, "documentation": 50}, crit) == 100.0
