from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import httpx

from devarena_api.core.config import Settings
from devarena_api.errors import NotFoundError, UpstreamError

_MAX_REPO_PAGES = 3
_PER_PAGE = 100


@dataclass(frozen=True)
class RepoSummary:
    owner: str
    name: str
    description: str | None = None
    language: str | None = None
    stargazers_count: int = 0
    forks_count: int = 0
    fork: bool = False
    url: str | None = None
    topics: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RepoSummary":
        owner = data.get("owner") or {}
        return cls(
            owner=str(owner.get("login") or ""),
            name=str(data.get("name") or ""),
            description=data.get("description") or None,
            language=data.get("language") or None,
            stargazers_count=int(data.get("stargazers_count") or 0),
            forks_count=int(data.get("forks_count") or 0),
            fork=bool(data.get("fork")),
            url=data.get("html_url") or None,
            topics=tuple(str(t) for t in (data.get("topics") or [])),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "name": self.name,
            "description": self.description,
            "language": self.language,
            "stargazers_count": self.stargazers_count,
            "forks_count": self.forks_count,
            "fork": self.fork,
            "url": self.url,
            "topics": list(self.topics),
        }


def _retry_after(resp: httpx.Response) -> float | None:
    ra = resp.headers.get("Retry-After")
    if ra:
        try:
            return max(1.0, float(ra))
        except ValueError:
            return 60.0
    if resp.headers.get("X-RateLimit-Remaining") == "0":
        reset = resp.headers.get("X-RateLimit-Reset")
        try:
            return max(1.0, float(reset or 0) - time.time())
        except ValueError:
            return 60.0
    return None


def _raise_for_status(resp: httpx.Response, *, what: str) -> None:
    if 200 <= resp.status_code < 300:
        return
    retry_after = _retry_after(resp)
    if resp.status_code == 429 or (resp.status_code == 403 and retry_after is not None):
        raise UpstreamError(
            f"GitHub rate limit hit while fetching {what}",
            service="github",
            upstream_status=429,
            retry_after_sec=retry_after or 60.0,
        )
    raise UpstreamError(
        f"GitHub request for {what} failed ({resp.status_code})",
        service="github",
        upstream_status=resp.status_code,
        details={"body": resp.text[:300]},
    )


class GitHubClient:
    """Repository data source backed by the GitHub REST API."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._http_loop: asyncio.AbstractEventLoop | None = None

    def _client(self) -> httpx.AsyncClient:
        """Shared pooled client, rebuilt only when used from a different event loop."""
        loop = asyncio.get_running_loop()
        if self._http is None or self._http.is_closed or self._http_loop is not loop:
            self._http = self._build_client()
            self._http_loop = loop
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None
        self._http_loop = None

    def _build_client(self) -> httpx.AsyncClient:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"
        return httpx.AsyncClient(
            base_url=self.settings.github_api_url.rstrip("/"),
            headers=headers,
            timeout=self.settings.github_timeout_sec,
            limits=httpx.Limits(max_connections=int(self.settings.github_max_connections)),
            transport=self._transport,
        )

    async def list_user_repos(self, username: str) -> list[RepoSummary]:
        repos: list[RepoSummary] = []
        client = self._client()
        for page in range(1, _MAX_REPO_PAGES + 1):
            try:
                resp = await client.get(
                    f"/users/{username}/repos",
                    params={
                        "per_page": _PER_PAGE,
                        "page": page,
                        "sort": "updated",
                        "type": "owner",
                    },
                )
            except httpx.HTTPError as exc:
                raise UpstreamError(
                    f"Failed to fetch repositories for {username}: {exc}",
                    service="github",
                ) from exc
            if resp.status_code == 404:
                raise NotFoundError(
                    f"GitHub user {username} not found",
                    details={"username": username},
                )
            _raise_for_status(resp, what=f"repositories of {username}")
            data = resp.json()
            if not isinstance(data, list):
                break
            repos.extend(RepoSummary.from_api(item) for item in data)
            if len(data) < _PER_PAGE:
                break
        return repos

    async def count_authored_commits(self, owner: str, repo: str, author: str) -> int:
        """Number of commits by ``author`` on the default branch (capped at one page)."""
        try:
            resp = await self._client().get(
                f"/repos/{owner}/{repo}/commits",
                params={"author": author, "per_page": 30},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Failed to fetch commits for {owner}/{repo}: {exc}",
                service="github",
            ) from exc
        # Empty repository.
        if resp.status_code == 409:
            return 0
        if resp.status_code == 404:
            return 0
        _raise_for_status(resp, what=f"commits of {owner}/{repo}")
        data = resp.json()
        return len(data) if isinstance(data, list) else 0


def repo_rank_key(repo: RepoSummary) -> tuple[int, int, str]:
    return (-repo.stargazers_count, -repo.forks_count, repo.name.lower())


def forks_worth_checking(repos: Sequence[RepoSummary], *, limit: int) -> list[RepoSummary]:
    """Forks that would still make the top ``limit`` if the user authored commits there."""
    forks = [r for r in repos if r.fork]
    if limit <= 0:
        return []
    own = sorted((r for r in repos if not r.fork), key=repo_rank_key)
    if len(own) < limit:
        return forks
    bar = repo_rank_key(own[limit - 1])
    return [r for r in forks if repo_rank_key(r) < bar]


def select_top_repos(
    repos: Iterable[RepoSummary],
    *,
    authored_forks: Iterable[str] = (),
    limit: int = 10,
) -> list[RepoSummary]:
    """Non-forks plus forks the user actually committed to, most-starred first."""
    keep_forks = {str(name).lower() for name in authored_forks}
    eligible = [
        r for r in repos if (not r.fork) or (r.name.lower() in keep_forks)
    ]
    eligible.sort(key=repo_rank_key)
    return eligible[: max(0, int(limit))]
