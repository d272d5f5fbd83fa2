from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

import pytest


_TEST_ROOT = Path(tempfile.mkdtemp(prefix="devarena_test_"))
_DB_PATH = _TEST_ROOT / "devarena_test.db"

os.environ["DEVARENA_DB_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["DEVARENA_AUTH_JWT_SECRET"] = "test-secret"
os.environ["DEVARENA_EMAIL_MODE"] = "mock"
os.environ["DEVARENA_AI_API_KEY"] = ""
os.environ["DEVARENA_GITHUB_TOKEN"] = ""


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_repo(owner: str, name: str, *, stars: int = 0, forks: int = 0, fork: bool = False):
    from devarena_api.github import RepoSummary

    return RepoSummary(
        owner=owner,
        name=name,
        description=f"{name} by {owner}",
        language="Python",
        stargazers_count=stars,
        forks_count=forks,
        fork=fork,
        url=f"https://github.com/{owner}/{name}",
    )


class FakeRepoSource:
    """Every unknown user owns two public repos unless listed in ``empty``."""

    def __init__(
        self,
        repos: dict[str, list[Any]] | None = None,
        *,
        authored: dict[str, int] | None = None,
        empty: Sequence[str] = (),
    ):
        self.repos = {k.lower(): v for k, v in (repos or {}).items()}
        self.authored = dict(authored or {})
        self.empty = {e.lower() for e in empty}
        self.list_calls: list[str] = []
        self.commit_calls: list[tuple[str, str, str]] = []

    async def list_user_repos(self, username: str) -> list[Any]:
        self.list_calls.append(username)
        key = username.lower()
        if key in self.empty:
            return []
        if key in self.repos:
            return list(self.repos[key])
        return [
            make_repo(username, "alpha", stars=12, forks=2),
            make_repo(username, "beta", stars=3),
        ]

    async def count_authored_commits(self, owner: str, repo: str, author: str) -> int:
        self.commit_calls.append((owner, repo, author))
        return int(self.authored.get(repo, 0))


class FakeProfileGenerator:
    model_name = "fake-flash"

    def __init__(self, *, error: Exception | None = None):
        self.error = error
        self.calls: list[tuple[str, list[str]]] = []

    async def generate_profile(self, username: str, repos: Sequence[Any]):
        from devarena_api.ai import DeveloperProfile, TokenUsage

        self.calls.append((username, [r.name for r in repos]))
        if self.error is not None:
            raise self.error
        profile = DeveloperProfile(
            summary=f"{username} builds things",
            overall_score=72,
            suggestions=["write more tests"],
        )
        return profile, TokenUsage(input_tokens=100, output_tokens=50, total_tokens=150)


class FakeEvaluator:
    model_name = "fake-pro"

    def __init__(
        self,
        *,
        winner: str | None = None,
        error: Exception | None = None,
        delay_sec: float = 0.0,
    ):
        self.winner = winner
        self.error = error
        self.delay_sec = delay_sec
        self.calls: list[dict[str, Any]] = []

    async def evaluate_battle(
        self,
        challenger_profile,
        opponent_profile,
        challenger_username: str,
        opponent_username: str,
        criteria,
    ):
        from devarena_api.ai import BattleEvaluation, SideScore, TokenUsage

        self.calls.append(
            {
                "challenger": challenger_username,
                "opponent": opponent_username,
                "criteria": [c.value for c in criteria],
            }
        )
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.error is not None:
            raise self.error
        evaluation = BattleEvaluation(
            winner=self.winner if self.winner is not None else challenger_username,
            reason="Broader, better-tested portfolio",
            challenger_score=SideScore(total=81, breakdown={c.value: 8 for c in criteria}),
            opponent_score=SideScore(total=64, breakdown={c.value: 6 for c in criteria}),
            highlights=["strong testing culture"],
            recommendations=["document the public APIs"],
        )
        return evaluation, TokenUsage(input_tokens=400, output_tokens=200, total_tokens=600)


class FakeEmailSender:
    def __init__(self, *, ok: bool = True, status_code: int = 200, error: Exception | None = None):
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.sent: list[dict[str, str]] = []

    async def send(self, *, to: str, subject: str, html: str):
        from devarena_api.notifications import SendResult

        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html})
        if self.ok:
            return SendResult(ok=True, status_code=self.status_code)
        return SendResult(ok=False, status_code=self.status_code, error="boom")


@pytest.fixture(autouse=True)
def clean_db():
    from devarena_api import models  # noqa: F401
    from devarena_api.db import Base, engine
    from devarena_api.rate_limit import reset_rate_limits

    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    reset_rate_limits()
    yield


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_executor(clock):
    """Build a ``BattleExecutor`` wired to fakes; keyword overrides replace any fake."""
    from devarena_api.core.config import Settings
    from devarena_api.db import SessionLocal
    from devarena_api.executor import BattleExecutor
    from devarena_api.profiles import ProfileCacheManager

    def _make(
        *,
        repo_source: FakeRepoSource | None = None,
        generator: FakeProfileGenerator | None = None,
        evaluator: FakeEvaluator | None = None,
        email_sender: FakeEmailSender | None = None,
        **settings_overrides: Any,
    ) -> BattleExecutor:
        settings = Settings(**settings_overrides)
        profiles = ProfileCacheManager(
            session_factory=SessionLocal,
            repo_source=repo_source or FakeRepoSource(),
            generator=generator or FakeProfileGenerator(),
            settings=settings,
            clock=clock,
        )
        return BattleExecutor(
            session_factory=SessionLocal,
            profiles=profiles,
            evaluator=evaluator or FakeEvaluator(),
            email_sender=email_sender,
            settings=settings,
            clock=clock,
        )

    return _make


@pytest.fixture()
def pending_battle(clock):
    """Factory creating a pending battle row; returns its id."""
    from devarena_api.battles import create_battle
    from devarena_api.criteria import parse_criteria
    from devarena_api.db import SessionLocal

    def _create(
        *,
        challenger: tuple[str, str] = ("u_alice", "alice"),
        opponent: tuple[str, str] = ("u_bob", "bob"),
        criteria: list[str] | None = None,
    ) -> str:
        with SessionLocal() as session:
            battle = create_battle(
                session,
                challenger_id=challenger[0],
                challenger_username=challenger[1],
                opponent_id=opponent[0],
                opponent_username=opponent[1],
                criteria=parse_criteria(criteria),
                now=clock(),
            )
            return str(battle.id)

    return _create


def collect(executor, battle_id: str, *, caller_id: str) -> list[Any]:
    async def _run() -> list[Any]:
        events = [e async for e in executor.execute(battle_id, caller_id=caller_id)]
        await executor.wait_idle()
        return events

    return asyncio.run(_run())


def auth_headers(user_id: str, name: str | None = None) -> dict[str, str]:
    from devarena_api.core.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(subject=user_id, name=name)}"}


@pytest.fixture()
def api_client():
    from fastapi.testclient import TestClient

    from devarena_api.core.config import Settings
    from devarena_api.db import SessionLocal
    from devarena_api.executor import BattleExecutor
    from devarena_api.main import create_app
    from devarena_api.profiles import ProfileCacheManager

    settings = Settings()
    clock = FakeClock()
    executor = BattleExecutor(
        session_factory=SessionLocal,
        profiles=ProfileCacheManager(
            session_factory=SessionLocal,
            repo_source=FakeRepoSource(),
            generator=FakeProfileGenerator(),
            settings=settings,
            clock=clock,
        ),
        evaluator=FakeEvaluator(),
        email_sender=FakeEmailSender(),
        settings=settings,
        clock=clock,
    )
    app = create_app(settings=settings, executor=executor)
    with TestClient(app) as client:
        yield client
