from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Protocol, Sequence
from uuid import uuid4

import orjson
from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from devarena_api.ai import DeveloperProfile, ProfileGenerator
from devarena_api.core.config import Settings
from devarena_api.errors import NotFoundError, PersistenceError
from devarena_api.github import RepoSummary, forks_worth_checking, select_top_repos
from devarena_api.logs import log_event
from devarena_api.models import ProfileCacheEntry
from devarena_api.usage import FEATURE_PROFILE, log_token_usage

_VERSION_INSERT_ATTEMPTS = 3

# (status, fraction of this profile's work done 0..1, message, metadata)
ProfileProgress = Callable[[str, float, str, dict[str, Any]], None]


class RepoSource(Protocol):
    async def list_user_repos(self, username: str) -> list[RepoSummary]: ...

    async def count_authored_commits(self, owner: str, repo: str, author: str) -> int: ...


@dataclass(frozen=True)
class CachedProfile:
    username: str
    version: int
    profile: DeveloperProfile
    updated_at: datetime
    generated: bool


def normalize_username(username: str) -> str:
    return str(username or "").strip().lower()


def _as_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def is_stale(updated_at: datetime, *, now: datetime, max_age: timedelta) -> bool:
    return (_as_aware(now) - _as_aware(updated_at)) > max_age


def latest_entry(session: Session, *, username: str) -> ProfileCacheEntry | None:
    return session.scalars(
        select(ProfileCacheEntry)
        .where(ProfileCacheEntry.username == normalize_username(username))
        .order_by(desc(ProfileCacheEntry.version))
        .limit(1)
    ).first()


def _noop_progress(status: str, fraction: float, message: str, meta: dict[str, Any]) -> None:
    return None


class ProfileCacheManager:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        repo_source: RepoSource,
        generator: ProfileGenerator,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.repo_source = repo_source
        self.generator = generator
        self.settings = settings or Settings()
        self.clock = clock or (lambda: datetime.now(UTC))

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=int(self.settings.arena_profile_stale_hours))

    async def get_or_generate_profile(
        self,
        username: str,
        *,
        requested_by: str,
        on_progress: ProfileProgress | None = None,
    ) -> CachedProfile:
        progress = on_progress or _noop_progress
        key = normalize_username(username)
        if not key:
            raise NotFoundError("Username is required")

        progress("loading_profile", 0.0, f"Loading profile for {username}...", {})
        with self.session_factory() as session:
            entry = latest_entry(session, username=key)
            if entry is not None and not is_stale(
                entry.updated_at, now=self.clock(), max_age=self.max_age
            ):
                progress(
                    "profile_cached",
                    1.0,
                    f"Using cached profile for {username}",
                    {"version": int(entry.version)},
                )
                return CachedProfile(
                    username=key,
                    version=int(entry.version),
                    profile=DeveloperProfile.model_validate(orjson.loads(entry.profile_json)),
                    updated_at=_as_aware(entry.updated_at),
                    generated=False,
                )

        progress("fetching_repos", 0.15, f"Fetching repositories for {username}...", {})
        repos = await self.repo_source.list_user_repos(username)
        if not repos:
            raise NotFoundError(
                f"{username} has no public repositories",
                details={"username": username},
            )

        limit = int(self.settings.arena_profile_top_repos)
        forks = forks_worth_checking(repos, limit=limit)
        authored_forks: list[str] = []
        if forks:
            progress(
                "checking_forks",
                0.3,
                f"Checking contributions to {len(forks)} forks for {username}...",
                {"forks": len(forks)},
            )
            authored_forks = await self._authored_forks(forks, username=username)

        selected = select_top_repos(repos, authored_forks=authored_forks, limit=limit)
        if not selected:
            raise NotFoundError(
                f"{username} has no repositories with authored contributions",
                details={"username": username, "repos": len(repos)},
            )

        progress(
            "generating_profile",
            0.5,
            f"Analyzing {len(selected)} repositories for {username}...",
            {"repos_analyzed": len(selected), "repos_total": len(repos)},
        )
        profile, usage = await self.generator.generate_profile(username, selected)

        with self.session_factory() as session:
            log_token_usage(
                session,
                user_id=requested_by,
                feature=FEATURE_PROFILE,
                username=key,
                model=str(getattr(self.generator, "model_name", "unknown")),
                usage=usage,
                is_byok=bool(self.settings.ai_is_byok),
                now=self.clock(),
            )
            entry = self._insert_version(session, username=key, profile=profile, repos=len(selected))
            version = int(entry.version)
            updated_at = _as_aware(entry.updated_at)

        log_event(
            "profile_generated",
            username=key,
            version=version,
            repos_analyzed=len(selected),
        )
        progress(
            "profile_generated",
            1.0,
            f"Profile generated for {username}",
            {"version": version, "repos_analyzed": len(selected)},
        )
        return CachedProfile(
            username=key,
            version=version,
            profile=profile,
            updated_at=updated_at,
            generated=True,
        )

    async def _authored_forks(self, forks: Sequence[RepoSummary], *, username: str) -> list[str]:
        gate = asyncio.Semaphore(int(self.settings.github_fork_check_concurrency))

        async def _count(repo: RepoSummary) -> int:
            async with gate:
                return await self.repo_source.count_authored_commits(
                    repo.owner or username, repo.name, username
                )

        counts = await asyncio.gather(*(_count(r) for r in forks))
        return [r.name for r, n in zip(forks, counts) if int(n) > 0]

    def _insert_version(
        self,
        session: Session,
        *,
        username: str,
        profile: DeveloperProfile,
        repos: int,
    ) -> ProfileCacheEntry:
        """Append ``max(version) + 1``; a concurrent writer simply pushes us one higher."""
        last_exc: IntegrityError | None = None
        for _ in range(_VERSION_INSERT_ATTEMPTS):
            current = session.scalar(
                select(func.max(ProfileCacheEntry.version)).where(
                    ProfileCacheEntry.username == username
                )
            )
            entry = ProfileCacheEntry(
                id=f"pc_{uuid4().hex}",
                username=username,
                version=int(current or 0) + 1,
                profile_json=profile.model_dump_json(),
                repos_analyzed=int(repos),
                updated_at=self.clock(),
            )
            session.add(entry)
            try:
                session.commit()
                return entry
            except IntegrityError as exc:
                session.rollback()
                last_exc = exc
        raise PersistenceError(
            f"Could not write a new profile version for {username}",
            details={"username": username},
        ) from last_exc


def list_versions(session: Session, *, username: str) -> Sequence[ProfileCacheEntry]:
    return session.scalars(
        select(ProfileCacheEntry)
        .where(ProfileCacheEntry.username == normalize_username(username))
        .order_by(ProfileCacheEntry.version.asc())
    ).all()
