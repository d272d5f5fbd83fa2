from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from devarena_api.battles import battle_to_dict, create_battle, get_battle, list_battle_history
from devarena_api.core.config import Settings
from devarena_api.criteria import parse_criteria
from devarena_api.deps import Caller, CurrentCaller, DBSession, Executor
from devarena_api.elo import TIERS
from devarena_api.errors import (
    ArenaError,
    ConflictError,
    NotFoundError,
    ValidationError,
    to_http_exception,
)
from devarena_api.executor import BattleExecutor
from devarena_api.models import Ranking
from devarena_api.notifications import register_developer_email
from devarena_api.progress import ProgressEvent
from devarena_api.rankings import (
    RankingSnapshot,
    find_ranking_by_username,
    get_or_create_ranking,
    leaderboard as leaderboard_rows,
)
from devarena_api.rate_limit import check_rate_limit

router = APIRouter(prefix="/api/arena", tags=["arena"])


class ChallengeIn(BaseModel):
    opponent_username: str = Field(min_length=1, max_length=39)
    opponent_id: str | None = Field(default=None, max_length=80)
    criteria: list[str] | None = None


class BattleOut(BaseModel):
    id: str
    challenger_id: str
    challenger_username: str
    opponent_id: str
    opponent_username: str
    criteria: list[str]
    status: str
    scores: dict[str, Any] | None = None
    ai_analysis: dict[str, Any] | None = None
    elo_change: dict[str, Any] | None = None
    winner_id: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RankingOut(BaseModel):
    user_id: str
    username: str
    elo_rating: int
    tier: str
    wins: int
    losses: int
    total_battles: int
    win_rate: float
    win_streak: int
    best_win_streak: int
    last_battle_at: datetime | None = None


class LeaderboardRowOut(BaseModel):
    rank: int
    user_id: str
    username: str
    elo_rating: int
    tier: str
    wins: int
    losses: int
    win_rate: float
    total_battles: int
    win_streak: int


class EmailIn(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _ranking_out(snap: RankingSnapshot) -> RankingOut:
    return RankingOut(
        user_id=snap.user_id,
        username=snap.username,
        elo_rating=snap.elo_rating,
        tier=snap.tier,
        wins=snap.wins,
        losses=snap.losses,
        total_battles=snap.total_battles,
        win_rate=snap.win_rate,
        win_streak=snap.win_streak,
        best_win_streak=snap.best_win_streak,
        last_battle_at=snap.last_battle_at,
    )


def _caller_username(db: Session, caller: Caller) -> str:
    if caller.name:
        return caller.name
    existing = db.get(Ranking, caller.user_id)
    if existing is not None:
        return str(existing.username)
    raise ValidationError("Caller has no GitHub username", details={"user_id": caller.user_id})


@router.post("/battles", response_model=BattleOut, status_code=201)
def challenge(
    req: ChallengeIn,
    caller: Caller = CurrentCaller,
    db: Session = DBSession,
) -> BattleOut:
    settings = Settings()
    check_rate_limit(
        user_id=caller.user_id,
        action="battle_create",
        per_minute=int(settings.rate_limit_battle_create_per_minute),
        per_hour=int(settings.rate_limit_battle_create_per_hour),
        settings=settings,
    )
    try:
        criteria = parse_criteria(req.criteria)
        challenger_username = _caller_username(db, caller)
        opponent_username = req.opponent_username.strip()
        opponent_id = (req.opponent_id or "").strip()
        if not opponent_id:
            known = find_ranking_by_username(db, username=opponent_username)
            opponent_id = known.user_id if known is not None else f"gh:{opponent_username.lower()}"
        battle = create_battle(
            db,
            challenger_id=caller.user_id,
            challenger_username=challenger_username,
            opponent_id=opponent_id,
            opponent_username=opponent_username,
            criteria=criteria,
        )
    except ArenaError as exc:
        raise to_http_exception(exc) from exc
    return BattleOut(**battle_to_dict(battle))


async def _sse(events: AsyncIterator[ProgressEvent]) -> AsyncIterator[bytes]:
    async for event in events:
        yield event.to_sse()


@router.post("/battles/{battle_id}/execute")
def execute_battle(
    battle_id: str,
    caller: Caller = CurrentCaller,
    executor: BattleExecutor = Executor,
) -> StreamingResponse:
    settings = Settings()
    check_rate_limit(
        user_id=caller.user_id,
        action="battle_execute",
        per_minute=int(settings.rate_limit_battle_execute_per_minute),
        per_hour=int(settings.rate_limit_battle_execute_per_hour),
        settings=settings,
        extra_detail={"battle_id": battle_id},
    )
    return StreamingResponse(
        _sse(executor.execute(battle_id, caller_id=caller.user_id)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/battles/{battle_id}", response_model=BattleOut)
def battle_detail(
    battle_id: str,
    _caller: Caller = CurrentCaller,
    db: Session = DBSession,
) -> BattleOut:
    battle = get_battle(db, battle_id)
    if battle is None:
        raise to_http_exception(NotFoundError(f"Battle {battle_id} not found"))
    return BattleOut(**battle_to_dict(battle))


@router.get("/battles", response_model=list[BattleOut])
def battle_history(
    limit: int = Query(default=10, ge=1, le=50),
    offset: int = Query(default=0, ge=0),
    caller: Caller = CurrentCaller,
    db: Session = DBSession,
) -> list[BattleOut]:
    rows = list_battle_history(db, user_id=caller.user_id, limit=limit, offset=offset)
    return [BattleOut(**battle_to_dict(b)) for b in rows]


@router.get("/leaderboard", response_model=list[LeaderboardRowOut])
def leaderboard(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    tier: str | None = None,
    db: Session = DBSession,
) -> list[LeaderboardRowOut]:
    if tier is not None and tier not in TIERS:
        raise to_http_exception(
            ValidationError(f"Unknown tier {tier!r}", details={"allowed": list(TIERS)})
        )
    rows = leaderboard_rows(db, limit=limit, offset=offset, tier=tier)
    out: list[LeaderboardRowOut] = []
    for i, row in enumerate(rows):
        snap = RankingSnapshot.of(row)
        out.append(
            LeaderboardRowOut(
                rank=offset + i + 1,
                user_id=snap.user_id,
                username=snap.username,
                elo_rating=snap.elo_rating,
                tier=snap.tier,
                wins=snap.wins,
                losses=snap.losses,
                win_rate=snap.win_rate,
                total_battles=snap.total_battles,
                win_streak=snap.win_streak,
            )
        )
    return out


@router.get("/rankings/{username}", response_model=RankingOut)
def ranking_for(username: str, db: Session = DBSession) -> RankingOut:
    row = find_ranking_by_username(db, username=username)
    if row is None:
        raise to_http_exception(
            NotFoundError(f"No ranking for {username}", details={"username": username})
        )
    return _ranking_out(RankingSnapshot.of(row))


@router.get("/me", response_model=RankingOut)
def my_ranking(caller: Caller = CurrentCaller, db: Session = DBSession) -> RankingOut:
    try:
        username = _caller_username(db, caller)
    except ArenaError as exc:
        raise to_http_exception(exc) from exc
    row = get_or_create_ranking(db, user_id=caller.user_id, username=username)
    return _ranking_out(RankingSnapshot.of(row))


@router.put("/me/email")
def set_my_email(
    req: EmailIn, caller: Caller = CurrentCaller, db: Session = DBSession
) -> dict[str, Any]:
    try:
        username = _caller_username(db, caller)
        register_developer_email(db, username=username, email=req.email)
    except IntegrityError as exc:
        db.rollback()
        raise to_http_exception(
            ConflictError("Email is already registered to another developer")
        ) from exc
    except ArenaError as exc:
        raise to_http_exception(exc) from exc
    return {"ok": True, "username": username}
