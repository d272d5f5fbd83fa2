from __future__ import annotations

import pytest

from devarena_api.elo import (
    RATING_FLOOR,
    TIER_THRESHOLDS,
    TIERS,
    compute_elo_change,
    determine_tier,
    expected_score,
)


def test_equal_ratings_challenger_win_moves_sixteen_points() -> None:
    res = compute_elo_change(challenger_rating=1500, opponent_rating=1500, challenger_won=True)
    assert res.challenger.change == 16
    assert res.opponent.change == -16
    assert res.challenger.after == 1516
    assert res.opponent.after == 1484
    assert res.as_dict()["challenger"] == {"before": 1500, "after": 1516, "change": 16}


def test_half_point_deltas_round_up() -> None:
    win = compute_elo_change(
        challenger_rating=1500, opponent_rating=1500, challenger_won=True, k_factor=33
    )
    loss = compute_elo_change(
        challenger_rating=1500, opponent_rating=1500, challenger_won=False, k_factor=33
    )
    assert (win.challenger.change, win.opponent.change) == (17, -17)
    assert (loss.challenger.change, loss.opponent.change) == (-16, 16)


def test_expected_scores_are_complementary() -> None:
    a = expected_score(1600, 1400)
    b = expected_score(1400, 1600)
    assert a > 0.5 > b
    assert a + b == pytest.approx(1.0)


@pytest.mark.parametrize(
    "challenger,opponent",
    [(1200, 1200), (1500, 900), (900, 1500), (2400, 100), (0, 0), (10, 2000)],
)
@pytest.mark.parametrize("challenger_won", [True, False])
def test_changes_are_zero_sum_and_monotone(challenger: int, opponent: int, challenger_won: bool) -> None:
    res = compute_elo_change(
        challenger_rating=challenger, opponent_rating=opponent, challenger_won=challenger_won
    )
    assert res.challenger.change + res.opponent.change == 0
    winner, loser = (res.challenger, res.opponent) if challenger_won else (res.opponent, res.challenger)
    assert winner.change >= 0
    assert loser.change <= 0
    assert winner.after >= winner.before
    assert loser.after <= loser.before


def test_upset_win_is_worth_more_than_expected_win() -> None:
    upset = compute_elo_change(challenger_rating=1200, opponent_rating=1600, challenger_won=True)
    expected = compute_elo_change(challenger_rating=1600, opponent_rating=1200, challenger_won=True)
    assert upset.challenger.change > expected.challenger.change


def test_rating_never_drops_below_floor() -> None:
    res = compute_elo_change(challenger_rating=5, opponent_rating=5, challenger_won=False)
    assert res.challenger.change == -16
    assert res.challenger.after == RATING_FLOOR
    assert res.opponent.after == 21


def test_custom_k_factor_scales_delta() -> None:
    res = compute_elo_change(
        challenger_rating=1500, opponent_rating=1500, challenger_won=True, k_factor=64
    )
    assert res.challenger.change == 32


def test_non_positive_k_factor_rejected() -> None:
    with pytest.raises(ValueError):
        compute_elo_change(
            challenger_rating=1500, opponent_rating=1500, challenger_won=True, k_factor=0
        )


def test_boundary_ratings_belong_to_the_higher_tier() -> None:
    for threshold, name in TIER_THRESHOLDS:
        assert determine_tier(threshold) == name
        if threshold > 0:
            assert determine_tier(threshold - 1) != name


def test_tiers_cover_the_whole_range_in_order() -> None:
    seen: list[str] = []
    for rating in range(0, 3001):
        tier = determine_tier(rating)
        assert tier in TIERS
        if not seen or seen[-1] != tier:
            seen.append(tier)
    assert seen == list(TIERS)
    assert determine_tier(1200) == "Bronze"
    assert determine_tier(10_000) == "Master"
