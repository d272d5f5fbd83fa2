from __future__ import annotations

import math
from dataclasses import dataclass

DEFAULT_K_FACTOR = 32
RATING_FLOOR = 0

# Ascending thresholds; a rating exactly on a boundary belongs to the higher tier.
TIER_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (0, "Bronze"),
    (1300, "Silver"),
    (1500, "Gold"),
    (1700, "Platinum"),
    (1900, "Diamond"),
    (2100, "Master"),
)
TIERS: tuple[str, ...] = tuple(name for _, name in TIER_THRESHOLDS)


@dataclass(frozen=True)
class EloSide:
    before: int
    after: int
    change: int

    def as_dict(self) -> dict[str, int]:
        return {"before": self.before, "after": self.after, "change": self.change}


@dataclass(frozen=True)
class EloResult:
    challenger: EloSide
    opponent: EloSide

    def as_dict(self) -> dict[str, dict[str, int]]:
        return {
            "challenger": self.challenger.as_dict(),
            "opponent": self.opponent.as_dict(),
        }


def expected_score(rating_a: int, rating_b: int) -> float:
    return 1.0 / (1.0 + math.pow(10.0, (rating_b - rating_a) / 400.0))


def _clamp(rating: int) -> int:
    return max(RATING_FLOOR, int(rating))


def compute_elo_change(
    *,
    challenger_rating: int,
    opponent_rating: int,
    challenger_won: bool,
    k_factor: int = DEFAULT_K_FACTOR,
) -> EloResult:
    """Zero-sum update: the opponent's delta is the exact negation of the
    challenger's. ``change`` is the rating delta; ``after`` is clamped to the
    floor, so near zero ``after - before`` may be smaller than ``change``."""
    if k_factor <= 0:
        raise ValueError("k_factor must be positive")
    expected = expected_score(int(challenger_rating), int(opponent_rating))
    actual = 1.0 if challenger_won else 0.0

    # Halves round up (+16.5 -> 17, -16.5 -> -16).
    delta = int(math.floor(k_factor * (actual - expected) + 0.5))
    return EloResult(
        challenger=EloSide(
            before=int(challenger_rating),
            after=_clamp(int(challenger_rating) + delta),
            change=delta,
        ),
        opponent=EloSide(
            before=int(opponent_rating),
            after=_clamp(int(opponent_rating) - delta),
            change=-delta,
        ),
    )


def determine_tier(rating: int) -> str:
    tier = TIER_THRESHOLDS[0][1]
    for threshold, name in TIER_THRESHOLDS:
        if rating >= threshold:
            tier = name
        else:
            break
    return tier
