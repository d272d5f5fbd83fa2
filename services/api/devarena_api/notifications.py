from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

import httpx
import orjson
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from devarena_api.core.config import Settings
from devarena_api.logs import log_event
from devarena_api.models import Battle, DeveloperEmail, EmailOutbox

KIND_BATTLE_RESULT = "battle_result"
MAX_ATTEMPTS = 8
# A claimed row whose send never finished becomes due again after this long.
SEND_LEASE_SEC = 300.0


@dataclass(frozen=True)
class SendResult:
    ok: bool
    status_code: int | None = None
    retry_after_sec: float | None = None
    error: str | None = None


class EmailSender(Protocol):
    async def send(self, *, to: str, subject: str, html: str) -> SendResult: ...


class ResendEmailSender:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self._transport = transport

    async def send(self, *, to: str, subject: str, html: str) -> SendResult:
        if self.settings.email_mode == "mock":
            log_event("email_mock_sent", to=to, subject=subject)
            return SendResult(ok=True, status_code=200)
        if not self.settings.resend_api_key:
            return SendResult(ok=False, error="missing_resend_api_key")

        url = f"{self.settings.resend_api_url.rstrip('/')}/emails"
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    json={
                        "from": self.settings.email_from,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    },
                    headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                )
        except httpx.HTTPError as exc:
            return SendResult(ok=False, error=str(exc)[:300])
        if resp.status_code == 429:
            try:
                retry_after = float(resp.headers.get("Retry-After") or 1.0)
            except ValueError:
                retry_after = 1.0
            return SendResult(
                ok=False, status_code=429, retry_after_sec=retry_after, error="rate_limited"
            )
        if 200 <= resp.status_code < 300:
            return SendResult(ok=True, status_code=resp.status_code)
        return SendResult(ok=False, status_code=resp.status_code, error=resp.text[:400])


def register_developer_email(
    session: Session,
    *,
    username: str,
    email: str,
    source_repo: str | None = None,
    now: datetime | None = None,
) -> DeveloperEmail:
    key = str(username).strip().lower()
    row = session.get(DeveloperEmail, key)
    if row is None:
        row = DeveloperEmail(
            username=key,
            email=str(email).strip(),
            source_repo=source_repo,
            created_at=now or datetime.now(UTC),
        )
    else:
        row.email = str(email).strip()
        row.source_repo = source_repo or row.source_repo
    session.add(row)
    session.commit()
    return row


def _email_for(session: Session, username: str) -> str | None:
    row = session.get(DeveloperEmail, str(username).strip().lower())
    return str(row.email) if row is not None and row.email else None


def _result_email(payload: dict[str, Any]) -> tuple[str, str]:
    won = bool(payload.get("won"))
    opponent = html.escape(str(payload.get("opponent_username") or ""))
    change = int(payload.get("elo_change") or 0)
    subject = (
        f"You won your battle against {opponent}!"
        if won
        else f"Battle result: {opponent} took this one"
    )
    body = (
        f"<p>Hi {html.escape(str(payload.get('username') or ''))},</p>"
        f"<p>Your arena battle against <b>{opponent}</b> is complete: "
        f"{'victory' if won else 'defeat'}.</p>"
        f"<p>Score: {payload.get('your_score')} vs {payload.get('opponent_score')}<br>"
        f"ELO: {payload.get('new_elo')} ({change:+d})</p>"
        f"<p>{html.escape(str(payload.get('reason') or ''))}</p>"
        f"<p><a href=\"{payload.get('link')}\">View the full analysis</a></p>"
    )
    return subject, body


def enqueue_battle_result_emails(
    session: Session,
    *,
    battle: Battle,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> list[EmailOutbox]:
    """Queue one result email per participant with a known address."""
    settings = settings or Settings()
    now_dt = now or datetime.now(UTC)
    scores = orjson.loads(battle.scores_json or "{}")
    elo = orjson.loads(battle.elo_change_json or "{}")
    analysis = orjson.loads(battle.ai_analysis_json or "{}")
    link = f"{settings.public_base_url.rstrip('/')}/arena/battles/{battle.id}"

    rows: list[EmailOutbox] = []
    sides = (
        (
            "challenger",
            "opponent",
            battle.challenger_username,
            battle.opponent_username,
            battle.challenger_id,
        ),
        (
            "opponent",
            "challenger",
            battle.opponent_username,
            battle.challenger_username,
            battle.opponent_id,
        ),
    )
    for me, other, username, other_username, user_id in sides:
        email = _email_for(session, username)
        if not email:
            continue
        payload = {
            "battle_id": battle.id,
            "username": username,
            "opponent_username": other_username,
            "won": battle.winner_id == user_id,
            "your_score": (scores.get(me) or {}).get("total"),
            "opponent_score": (scores.get(other) or {}).get("total"),
            "elo_change": (elo.get(me) or {}).get("change"),
            "new_elo": (elo.get(me) or {}).get("after"),
            "reason": analysis.get("reason"),
            "link": link,
        }
        row = EmailOutbox(
            id=f"eo_{uuid4().hex}",
            kind=KIND_BATTLE_RESULT,
            recipient=email,
            dedupe_key=f"{battle.id}:{username.lower()}",
            payload_json=orjson.dumps(payload).decode("utf-8"),
            status="queued",
            attempts=0,
            next_attempt_at=None,
            last_error=None,
            created_at=now_dt,
            sent_at=None,
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # Already queued for this battle.
            session.rollback()
            continue
        rows.append(row)
    return rows


def _due(now_dt: datetime):
    """Queued rows whose retry time has come, plus sends whose lease expired."""
    return or_(
        and_(
            EmailOutbox.status == "queued",
            or_(EmailOutbox.next_attempt_at.is_(None), EmailOutbox.next_attempt_at <= now_dt),
        ),
        and_(EmailOutbox.status == "sending", EmailOutbox.next_attempt_at <= now_dt),
    )


def _claim_outbox_row(session: Session, *, row_id: str, now_dt: datetime) -> bool:
    res = session.execute(
        update(EmailOutbox)
        .where(EmailOutbox.id == row_id)
        .where(_due(now_dt))
        .values(
            status="sending",
            next_attempt_at=now_dt + timedelta(seconds=SEND_LEASE_SEC),
        )
    )
    session.commit()
    return int(res.rowcount or 0) == 1


async def process_email_outbox(
    session: Session,
    *,
    sender: EmailSender,
    limit: int = 20,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Send due outbox rows. Each row is claimed before its send, so concurrent
    drains never deliver the same row twice."""
    now_dt = now or datetime.now(UTC)
    row_ids = session.scalars(
        select(EmailOutbox.id)
        .where(_due(now_dt))
        .order_by(EmailOutbox.created_at.asc())
        .limit(int(limit))
    ).all()

    processed = 0
    sent = 0
    failed = 0
    retried = 0
    for row_id in row_ids:
        if not _claim_outbox_row(session, row_id=row_id, now_dt=now_dt):
            continue
        row = session.get(EmailOutbox, row_id, populate_existing=True)
        if row is None:
            continue
        processed += 1
        try:
            payload = orjson.loads((row.payload_json or "{}").encode("utf-8"))
        except orjson.JSONDecodeError:
            payload = {}
        subject, body = _result_email(payload if isinstance(payload, dict) else {})

        try:
            res = await sender.send(to=row.recipient, subject=subject, html=body)
        except Exception as exc:  # noqa: BLE001
            res = SendResult(ok=False, error=f"{type(exc).__name__}: {exc}")
        row.attempts = int(row.attempts or 0) + 1
        if res.ok:
            row.status = "sent"
            row.sent_at = now_dt
            row.last_error = None
            row.next_attempt_at = None
            sent += 1
        else:
            row.last_error = str(res.error or "send_failed")[:400]
            if res.status_code == 429 and res.retry_after_sec is not None:
                row.status = "queued"
                row.next_attempt_at = now_dt + timedelta(seconds=float(res.retry_after_sec))
                retried += 1
            elif int(row.attempts) >= MAX_ATTEMPTS:
                row.status = "failed"
                row.next_attempt_at = None
                failed += 1
            else:
                backoff = min(3600.0, float(2 ** max(0, int(row.attempts) - 1)))
                row.status = "queued"
                row.next_attempt_at = now_dt + timedelta(seconds=backoff)
                retried += 1
            log_event(
                "notification_failed",
                level="warning",
                outbox_id=row.id,
                attempts=int(row.attempts),
                error=row.last_error,
            )
        session.add(row)
        session.commit()

    return {
        "ok": True,
        "processed": processed,
        "sent": sent,
        "failed": failed,
        "retried": retried,
    }
