from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import orjson
from sqlalchemy import select

from conftest import FakeEmailSender
from devarena_api.battles import claim_battle, create_battle
from devarena_api.core.config import Settings
from devarena_api.db import SessionLocal
from devarena_api.models import Battle, EmailOutbox
from devarena_api.notifications import (
    MAX_ATTEMPTS,
    SEND_LEASE_SEC,
    ResendEmailSender,
    SendResult,
    enqueue_battle_result_emails,
    process_email_outbox,
    register_developer_email,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _finished_battle(session) -> Battle:
    battle = create_battle(
        session,
        challenger_id="u1",
        challenger_username="alice",
        opponent_id="u2",
        opponent_username="bob",
        now=NOW,
    )
    claim_battle(session, battle_id=battle.id, now=NOW)
    battle.status = "completed"
    battle.winner_id = "u2"
    battle.scores_json = orjson.dumps(
        {"challenger": {"total": 55}, "opponent": {"total": 70}}
    ).decode()
    battle.elo_change_json = orjson.dumps(
        {
            "challenger": {"before": 1200, "after": 1184, "change": -16},
            "opponent": {"before": 1200, "after": 1216, "change": 16},
        }
    ).decode()
    battle.ai_analysis_json = orjson.dumps({"reason": "<b>tests</b> matter"}).decode()
    session.commit()
    return battle


class _RateLimitedSender:
    async def send(self, *, to: str, subject: str, html: str) -> SendResult:
        return SendResult(ok=False, status_code=429, retry_after_sec=120, error="rate_limited")


def test_enqueue_writes_one_row_per_known_address_and_dedupes() -> None:
    with SessionLocal() as session:
        register_developer_email(session, username="Bob", email="bob@example.com")
        battle = _finished_battle(session)

        rows = enqueue_battle_result_emails(session, battle=battle, now=NOW)
        again = enqueue_battle_result_emails(session, battle=battle, now=NOW)

        assert [r.recipient for r in rows] == ["bob@example.com"]
        assert again == []
        stored = session.scalars(select(EmailOutbox)).all()
        assert len(stored) == 1
        payload = orjson.loads(stored[0].payload_json)
        assert payload["won"] is True
        assert payload["new_elo"] == 1216
        assert payload["elo_change"] == 16
        assert payload["opponent_username"] == "alice"
        assert stored[0].dedupe_key == f"{battle.id}:bob"


def test_process_sends_and_marks_rows_sent() -> None:
    sender = FakeEmailSender()
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)

        res = asyncio.run(process_email_outbox(session, sender=sender, now=NOW))

        assert res["sent"] == 1 and res["processed"] == 1
        row = session.scalars(select(EmailOutbox)).one()
        assert row.status == "sent" and row.attempts == 1
    assert sender.sent[0]["subject"] == "Battle result: bob took this one"
    assert "&lt;b&gt;tests&lt;/b&gt;" in sender.sent[0]["html"]


def test_failed_sends_back_off_and_eventually_give_up() -> None:
    sender = FakeEmailSender(ok=False, status_code=500)
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)

        now = NOW
        asyncio.run(process_email_outbox(session, sender=sender, now=now))
        row = session.scalars(select(EmailOutbox)).one()
        assert row.status == "queued"
        assert row.next_attempt_at is not None

        # Not due yet.
        res = asyncio.run(process_email_outbox(session, sender=sender, now=now))
        assert res["processed"] == 0

        for _ in range(MAX_ATTEMPTS):
            now = now + timedelta(hours=2)
            asyncio.run(process_email_outbox(session, sender=sender, now=now))

        row = session.scalars(select(EmailOutbox)).one()
        assert row.status == "failed"
        assert row.attempts == MAX_ATTEMPTS
        assert row.last_error == "boom"


def test_rate_limited_send_honors_retry_after() -> None:
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)

        res = asyncio.run(process_email_outbox(session, sender=_RateLimitedSender(), now=NOW))

        assert res["retried"] == 1
        row = session.scalars(select(EmailOutbox)).one()
        assert row.status == "queued"
        due = row.next_attempt_at if row.next_attempt_at.tzinfo else row.next_attempt_at.replace(tzinfo=UTC)
        assert due == NOW + timedelta(seconds=120)


def test_resend_sender_mock_mode_never_calls_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no HTTP call expected in mock mode")

    sender = ResendEmailSender(Settings(email_mode="mock"), transport=httpx.MockTransport(handler))
    res = asyncio.run(sender.send(to="a@example.com", subject="s", html="<p>x</p>"))
    assert res.ok


def test_resend_sender_posts_and_maps_rate_limits() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(orjson.loads(request.content))
        if len(seen) == 1:
            return httpx.Response(200, json={"id": "em_1"})
        return httpx.Response(429, json={}, headers={"Retry-After": "30"})

    sender = ResendEmailSender(
        Settings(email_mode="resend", resend_api_key="re_test"),
        transport=httpx.MockTransport(handler),
    )
    ok = asyncio.run(sender.send(to="a@example.com", subject="s", html="<p>x</p>"))
    limited = asyncio.run(sender.send(to="a@example.com", subject="s", html="<p>x</p>"))

    assert ok.ok
    assert seen[0]["to"] == ["a@example.com"]
    assert not limited.ok
    assert limited.status_code == 429
    assert limited.retry_after_sec == 30.0


class _SlowSender:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, *, to: str, subject: str, html: str) -> SendResult:
        await asyncio.sleep(0.05)
        self.sent.append(to)
        return SendResult(ok=True, status_code=200)


def test_concurrent_drains_send_each_row_once() -> None:
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        register_developer_email(session, username="bob", email="bob@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)
    sender = _SlowSender()

    async def _drain() -> dict:
        with SessionLocal() as session:
            return await process_email_outbox(session, sender=sender, now=NOW)

    async def _both() -> list[dict]:
        return list(await asyncio.gather(_drain(), _drain()))

    results = asyncio.run(_both())

    assert sorted(sender.sent) == ["alice@example.com", "bob@example.com"]
    assert sum(r["sent"] for r in results) == 2
    with SessionLocal() as session:
        assert {r.status for r in session.scalars(select(EmailOutbox)).all()} == {"sent"}


def test_interrupted_send_is_retried_after_its_lease() -> None:
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)
        row = session.scalars(select(EmailOutbox)).one()
        row.status = "sending"
        row.next_attempt_at = NOW + timedelta(seconds=SEND_LEASE_SEC)
        session.commit()

        sender = FakeEmailSender()
        early = asyncio.run(process_email_outbox(session, sender=sender, now=NOW))
        assert early["processed"] == 0

        later = NOW + timedelta(seconds=SEND_LEASE_SEC + 1)
        res = asyncio.run(process_email_outbox(session, sender=sender, now=later))
        assert res["sent"] == 1
    assert [m["to"] for m in sender.sent] == ["alice@example.com"]


def test_sender_exception_is_recorded_and_rescheduled() -> None:
    sender = FakeEmailSender(error=RuntimeError("connection reset"))
    with SessionLocal() as session:
        register_developer_email(session, username="alice", email="alice@example.com")
        enqueue_battle_result_emails(session, battle=_finished_battle(session), now=NOW)

        res = asyncio.run(process_email_outbox(session, sender=sender, now=NOW))

        assert res["retried"] == 1
        row = session.scalars(select(EmailOutbox)).one()
        assert row.status == "queued"
        assert row.attempts == 1
        assert "connection reset" in row.last_error


def test_result_link_uses_the_given_public_base_url() -> None:
    settings = Settings(public_base_url="https://arena.example.com/")
    with SessionLocal() as session:
        register_developer_email(session, username="bob", email="bob@example.com")
        battle = _finished_battle(session)

        rows = enqueue_battle_result_emails(session, battle=battle, settings=settings, now=NOW)

        payload = orjson.loads(rows[0].payload_json)
        assert payload["link"] == f"https://arena.example.com/arena/battles/{battle.id}"
