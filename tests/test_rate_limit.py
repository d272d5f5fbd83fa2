from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import HTTPException

from devarena_api.core.config import Settings
from devarena_api.rate_limit import check_rate_limit


def test_per_minute_limit_sets_retry_after() -> None:
    now = datetime(2026, 1, 1, 0, 0, 15, tzinfo=UTC)
    for _ in range(2):
        check_rate_limit(user_id="u1", action="battle_execute", per_minute=2, per_hour=100, now=now)

    with pytest.raises(HTTPException) as ei:
        check_rate_limit(
            user_id="u1",
            action="battle_execute",
            per_minute=2,
            per_hour=100,
            now=now,
            extra_detail={"battle_id": "b_1"},
        )
    assert ei.value.status_code == 429
    assert ei.value.detail["retry_after_sec"] == 45
    assert ei.value.detail["battle_id"] == "b_1"
    assert ei.value.headers["Retry-After"] == "45"

    # Other users and other actions have their own windows.
    check_rate_limit(user_id="u2", action="battle_execute", per_minute=2, per_hour=100, now=now)
    check_rate_limit(user_id="u1", action="battle_create", per_minute=2, per_hour=100, now=now)

    # Next minute resets the window.
    check_rate_limit(
        user_id="u1",
        action="battle_execute",
        per_minute=2,
        per_hour=100,
        now=now + timedelta(minutes=1),
    )


def test_hourly_limit_spans_minutes() -> None:
    start = datetime(2026, 1, 1, 5, 0, tzinfo=UTC)
    for i in range(3):
        check_rate_limit(
            user_id="u1", action="hourly", per_minute=10, per_hour=3, now=start + timedelta(minutes=i)
        )
    with pytest.raises(HTTPException) as ei:
        check_rate_limit(
            user_id="u1", action="hourly", per_minute=10, per_hour=3, now=start + timedelta(minutes=10)
        )
    assert ei.value.detail["retry_after_sec"] == 3000


def test_disabled_limiter_never_raises() -> None:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    settings = Settings(rate_limit_enabled=False)
    for _ in range(10):
        check_rate_limit(
            user_id="u1", action="off", per_minute=1, per_hour=1, now=now, settings=settings
        )
