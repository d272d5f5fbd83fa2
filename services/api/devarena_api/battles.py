from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Sequence
from uuid import uuid4

import orjson
from sqlalchemy import desc, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from devarena_api.ai import BattleEvaluation
from devarena_api.criteria import BattleCriterion, parse_criteria
from devarena_api.elo import EloResult
from devarena_api.errors import ConflictError, PersistenceError, ValidationError
from devarena_api.models import Battle, ScoreHistory
from devarena_api.rankings import update_rankings


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return default


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def create_battle(
    session: Session,
    *,
    challenger_id: str,
    challenger_username: str,
    opponent_id: str,
    opponent_username: str,
    criteria: Sequence[BattleCriterion] | None = None,
    now: datetime | None = None,
) -> Battle:
    if str(challenger_id) == str(opponent_id) or (
        challenger_username.strip().lower() == opponent_username.strip().lower()
    ):
        raise ValidationError("A developer cannot battle themselves")
    battle = Battle(
        id=f"b_{uuid4().hex}",
        challenger_id=str(challenger_id),
        challenger_username=challenger_username.strip(),
        opponent_id=str(opponent_id),
        opponent_username=opponent_username.strip(),
        criteria_json=_dumps([c.value for c in (criteria or [])]),
        status="pending",
        created_at=now or datetime.now(UTC),
    )
    session.add(battle)
    session.commit()
    return battle


def get_battle(session: Session, battle_id: str) -> Battle | None:
    return session.get(Battle, str(battle_id), populate_existing=True)


def battle_criteria(battle: Battle) -> list[BattleCriterion]:
    raw = _loads(battle.criteria_json, [])
    return parse_criteria(raw if isinstance(raw, list) and raw else None)


def claim_battle(session: Session, *, battle_id: str, now: datetime | None = None) -> bool:
    """Atomically move ``pending -> in_progress``; False when someone else got there first."""
    res = session.execute(
        update(Battle)
        .where(Battle.id == str(battle_id))
        .where(Battle.status == "pending")
        .values(status="in_progress", started_at=now or datetime.now(UTC))
    )
    session.commit()
    return int(res.rowcount or 0) == 1


def complete_battle(
    session: Session,
    *,
    battle: Battle,
    evaluation: BattleEvaluation,
    elo: EloResult,
    challenger_won: bool,
    now: datetime | None = None,
) -> None:
    """Write results, both ranking updates and score history in one transaction."""
    now_dt = now or datetime.now(UTC)
    winner_id = battle.challenger_id if challenger_won else battle.opponent_id
    try:
        res = session.execute(
            update(Battle)
            .where(Battle.id == battle.id)
            .where(Battle.status == "in_progress")
            .values(
                status="completed",
                winner_id=winner_id,
                scores_json=_dumps(
                    {
                        "challenger": evaluation.challenger_score.model_dump(),
                        "opponent": evaluation.opponent_score.model_dump(),
                    }
                ),
                ai_analysis_json=_dumps(
                    {
                        "winner": evaluation.winner,
                        "reason": evaluation.reason,
                        "highlights": evaluation.highlights,
                        "recommendations": evaluation.recommendations,
                    }
                ),
                elo_change_json=_dumps(elo.as_dict()),
                error_message=None,
                completed_at=now_dt,
            )
        )
        if int(res.rowcount or 0) != 1:
            session.rollback()
            raise ConflictError(
                f"Battle {battle.id} is no longer in progress",
                details={"battle_id": battle.id},
            )

        update_rankings(
            session,
            challenger_id=battle.challenger_id,
            opponent_id=battle.opponent_id,
            challenger_won=challenger_won,
            challenger_elo=elo.challenger,
            opponent_elo=elo.opponent,
            now=now_dt,
        )
        for user_id, username, side, other, won in (
            (
                battle.challenger_id,
                battle.challenger_username,
                elo.challenger,
                battle.opponent_username,
                challenger_won,
            ),
            (
                battle.opponent_id,
                battle.opponent_username,
                elo.opponent,
                battle.challenger_username,
                not challenger_won,
            ),
        ):
            session.add(
                ScoreHistory(
                    id=f"sh_{uuid4().hex}",
                    user_id=str(user_id),
                    username=str(username),
                    elo_rating=int(side.after),
                    source="arena_battle",
                    meta_json=_dumps(
                        {
                            "battle_id": battle.id,
                            "opponent_username": other,
                            "won": bool(won),
                            "rating_change": int(side.change),
                        }
                    ),
                    created_at=now_dt,
                )
            )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(
            f"Failed to persist results for battle {battle.id}",
            details={"battle_id": battle.id, "reason": str(exc)[:300]},
        ) from exc


def fail_battle(
    session: Session,
    *,
    battle_id: str,
    error_message: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Mark an in-progress battle failed; terminal battles are left untouched."""
    res = session.execute(
        update(Battle)
        .where(Battle.id == str(battle_id))
        .where(Battle.status == "in_progress")
        .values(
            status="failed",
            error_message=(str(error_message)[:1000] if error_message else None),
            completed_at=now or datetime.now(UTC),
        )
    )
    session.commit()
    return int(res.rowcount or 0) == 1


def fail_stale_battles(
    session: Session,
    *,
    started_before: datetime,
    error_message: str,
    now: datetime | None = None,
) -> list[str]:
    """Fail ``in_progress`` battles claimed before ``started_before``; returns their ids."""
    stale_ids = session.scalars(
        select(Battle.id)
        .where(Battle.status == "in_progress")
        .where(or_(Battle.started_at.is_(None), Battle.started_at < started_before))
    ).all()
    return [
        str(battle_id)
        for battle_id in stale_ids
        if fail_battle(session, battle_id=battle_id, error_message=error_message, now=now)
    ]


def list_battle_history(
    session: Session, *, user_id: str, limit: int = 10, offset: int = 0
) -> list[Battle]:
    return list(
        session.scalars(
            select(Battle)
            .where(Battle.status == "completed")
            .where(
                or_(Battle.challenger_id == str(user_id), Battle.opponent_id == str(user_id))
            )
            .order_by(desc(Battle.completed_at), desc(Battle.id))
            .offset(int(offset))
            .limit(int(limit))
        ).all()
    )


def battle_to_dict(battle: Battle) -> dict[str, Any]:
    return {
        "id": battle.id,
        "challenger_id": battle.challenger_id,
        "challenger_username": battle.challenger_username,
        "opponent_id": battle.opponent_id,
        "opponent_username": battle.opponent_username,
        "criteria": [c.value for c in battle_criteria(battle)],
        "status": battle.status,
        "scores": _loads(battle.scores_json, None),
        "ai_analysis": _loads(battle.ai_analysis_json, None),
        "elo_change": _loads(battle.elo_change_json, None),
        "winner_id": battle.winner_id,
        "error_message": battle.error_message,
        "created_at": battle.created_at,
        "started_at": battle.started_at,
        "completed_at": battle.completed_at,
    }
