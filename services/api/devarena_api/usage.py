from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from devarena_api.ai import TokenUsage
from devarena_api.models import TokenUsageRecord

FEATURE_PROFILE = "arena_profile"
FEATURE_BATTLE = "arena_battle"


def log_token_usage(
    session: Session,
    *,
    user_id: str,
    feature: str,
    username: str | None,
    model: str,
    usage: TokenUsage,
    is_byok: bool = False,
    now: datetime | None = None,
) -> TokenUsageRecord:
    row = TokenUsageRecord(
        id=f"tu_{uuid4().hex}",
        user_id=str(user_id),
        feature=str(feature),
        repo_owner=username,
        model=str(model),
        input_tokens=int(usage.input_tokens),
        output_tokens=int(usage.output_tokens),
        total_tokens=int(usage.total_tokens),
        is_byok=bool(is_byok),
        created_at=now or datetime.now(UTC),
    )
    session.add(row)
    session.commit()
    return row


def total_tokens_for_user(session: Session, *, user_id: str, feature: str | None = None) -> int:
    q = select(func.coalesce(func.sum(TokenUsageRecord.total_tokens), 0)).where(
        TokenUsageRecord.user_id == str(user_id)
    )
    if feature:
        q = q.where(TokenUsageRecord.feature == str(feature))
    return int(session.scalar(q) or 0)
