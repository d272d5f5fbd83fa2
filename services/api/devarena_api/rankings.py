from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from devarena_api.core.config import Settings
from devarena_api.elo import EloSide, determine_tier
from devarena_api.errors import PersistenceError
from devarena_api.models import Ranking


@dataclass(frozen=True)
class RankingSnapshot:
    user_id: str
    username: str
    elo_rating: int
    tier: str
    wins: int
    losses: int
    total_battles: int
    win_streak: int
    best_win_streak: int
    last_battle_at: datetime | None

    @classmethod
    def of(cls, row: Ranking) -> "RankingSnapshot":
        return cls(
            user_id=str(row.user_id),
            username=str(row.username),
            elo_rating=int(row.elo_rating),
            tier=str(row.tier),
            wins=int(row.wins or 0),
            losses=int(row.losses or 0),
            total_battles=int(row.total_battles or 0),
            win_streak=int(row.win_streak or 0),
            best_win_streak=int(row.best_win_streak or 0),
            last_battle_at=row.last_battle_at,
        )

    @property
    def win_rate(self) -> float:
        if self.total_battles <= 0:
            return 0.0
        return round(self.wins / self.total_battles * 100.0, 1)


def get_or_create_ranking(
    session: Session,
    *,
    user_id: str,
    username: str,
    initial_elo: int | None = None,
    now: datetime | None = None,
) -> Ranking:
    """Existing row for ``user_id`` or a fresh one seeded at the initial rating.

    The primary key on ``user_id`` arbitrates creation races: the loser of an
    insert race rolls back and re-reads the winner's row.
    """
    existing = session.get(Ranking, str(user_id))
    if existing is not None:
        return existing

    rating = int(initial_elo if initial_elo is not None else Settings().arena_initial_elo)
    now_dt = now or datetime.now(UTC)
    row = Ranking(
        user_id=str(user_id),
        username=str(username),
        elo_rating=rating,
        tier=determine_tier(rating),
        wins=0,
        losses=0,
        total_battles=0,
        win_streak=0,
        best_win_streak=0,
        last_battle_at=None,
        created_at=now_dt,
        updated_at=now_dt,
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = session.get(Ranking, str(user_id), populate_existing=True)
        if existing is None:
            raise PersistenceError(
                f"Ranking for {user_id} conflicted but could not be re-read",
                details={"user_id": str(user_id)},
            ) from None
        return existing
    return row


def apply_battle_outcome(
    row: Ranking, *, won: bool, elo: EloSide, now: datetime
) -> Ranking:
    """Mutate ``row`` in place for one finished battle; caller commits."""
    if won:
        row.wins = int(row.wins or 0) + 1
        row.win_streak = int(row.win_streak or 0) + 1
    else:
        row.losses = int(row.losses or 0) + 1
        row.win_streak = 0
    row.total_battles = int(row.total_battles or 0) + 1
    row.best_win_streak = max(int(row.best_win_streak or 0), int(row.win_streak))
    row.elo_rating = int(elo.after)
    row.tier = determine_tier(int(elo.after))
    row.last_battle_at = now
    row.updated_at = now
    return row


def update_rankings(
    session: Session,
    *,
    challenger_id: str,
    opponent_id: str,
    challenger_won: bool,
    challenger_elo: EloSide,
    opponent_elo: EloSide,
    now: datetime,
) -> tuple[Ranking, Ranking]:
    """Stage both ranking updates on ``session`` without committing.

    Rows are re-read inside the caller's transaction so both updates land (or
    fail) together with whatever else the caller writes.
    """
    challenger = session.get(
        Ranking, str(challenger_id), populate_existing=True, with_for_update=True
    )
    opponent = session.get(
        Ranking, str(opponent_id), populate_existing=True, with_for_update=True
    )
    if challenger is None or opponent is None:
        raise PersistenceError(
            "Rankings not found for battle participants",
            details={"challenger_id": challenger_id, "opponent_id": opponent_id},
        )
    apply_battle_outcome(challenger, won=challenger_won, elo=challenger_elo, now=now)
    apply_battle_outcome(opponent, won=not challenger_won, elo=opponent_elo, now=now)
    session.add(challenger)
    session.add(opponent)
    return challenger, opponent


def find_ranking_by_username(session: Session, *, username: str) -> Ranking | None:
    return session.scalars(
        select(Ranking)
        .where(func.lower(Ranking.username) == str(username).strip().lower())
        .order_by(Ranking.total_battles.desc())
        .limit(1)
    ).first()


def leaderboard(
    session: Session, *, limit: int = 50, offset: int = 0, tier: str | None = None
) -> list[Ranking]:
    q = select(Ranking)
    if tier:
        q = q.where(Ranking.tier == str(tier))
    q = q.order_by(
        Ranking.elo_rating.desc(), Ranking.total_battles.desc(), Ranking.user_id.asc()
    )
    return list(session.scalars(q.offset(int(offset)).limit(int(limit))).all())
