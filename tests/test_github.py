from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import make_repo
from devarena_api.core.config import Settings
from devarena_api.errors import NotFoundError, UpstreamError
from devarena_api.github import GitHubClient, forks_worth_checking, select_top_repos


def _api_repo(name: str, *, stars: int = 0, fork: bool = False) -> dict:
    return {
        "name": name,
        "owner": {"login": "alice"},
        "description": None,
        "language": "Go",
        "stargazers_count": stars,
        "forks_count": 0,
        "fork": fork,
        "html_url": f"https://github.com/alice/{name}",
        "topics": ["cli"],
    }


def test_select_top_repos_keeps_authored_forks_and_sorts_by_stars() -> None:
    repos = [
        make_repo("alice", "small", stars=1),
        make_repo("alice", "big", stars=50),
        make_repo("alice", "forked-lib", stars=900, fork=True),
        make_repo("alice", "contributed-fork", stars=20, fork=True),
        make_repo("alice", "tie-b", stars=5, forks=1),
        make_repo("alice", "tie-a", stars=5, forks=1),
        make_repo("alice", "tie-c", stars=5, forks=4),
    ]
    top = select_top_repos(repos, authored_forks=["Contributed-Fork"], limit=5)
    assert [r.name for r in top] == ["big", "contributed-fork", "tie-c", "tie-a", "tie-b"]


def test_select_top_repos_with_only_unauthored_forks_is_empty() -> None:
    repos = [make_repo("alice", "upstream", stars=10, fork=True)]
    assert select_top_repos(repos) == []


def test_list_user_repos_paginates_until_short_page() -> None:
    pages: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        pages.append(page)
        if page == 1:
            return httpx.Response(200, json=[_api_repo(f"r{i}", stars=i) for i in range(100)])
        return httpx.Response(200, json=[_api_repo("last", fork=True)])

    client = GitHubClient(Settings(), transport=httpx.MockTransport(handler))
    repos = asyncio.run(client.list_user_repos("alice"))
    assert pages == [1, 2]
    assert len(repos) == 101
    assert repos[-1].name == "last" and repos[-1].fork is True
    assert repos[0].owner == "alice"
    assert repos[0].topics == ("cli",)


def test_list_user_repos_unknown_user_is_not_found() -> None:
    client = GitHubClient(
        Settings(), transport=httpx.MockTransport(lambda r: httpx.Response(404, json={}))
    )
    with pytest.raises(NotFoundError):
        asyncio.run(client.list_user_repos("ghost"))


def test_rate_limited_response_carries_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"Retry-After": "42"},
        )

    client = GitHubClient(Settings(), transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamError) as ei:
        asyncio.run(client.list_user_repos("alice"))
    assert ei.value.rate_limited
    assert ei.value.retry_after_sec == 42.0
    assert ei.value.details["service"] == "github"


def test_count_authored_commits_handles_empty_repository() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/empty/commits"):
            return httpx.Response(409, json={"message": "Git Repository is empty."})
        assert request.url.params["author"] == "alice"
        return httpx.Response(200, json=[{"sha": "a"}, {"sha": "b"}])

    client = GitHubClient(Settings(), transport=httpx.MockTransport(handler))
    assert asyncio.run(client.count_authored_commits("upstream", "empty", "alice")) == 0
    assert asyncio.run(client.count_authored_commits("upstream", "lib", "alice")) == 2


def test_client_is_reused_across_calls_and_closed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/commits"):
            return httpx.Response(200, json=[{"sha": "a"}])
        return httpx.Response(200, json=[_api_repo("one", stars=1)])

    gh = GitHubClient(Settings(), transport=httpx.MockTransport(handler))

    async def _run() -> tuple[bool, bool]:
        await gh.list_user_repos("alice")
        first = gh._client()
        await gh.count_authored_commits("upstream", "a", "alice")
        await gh.count_authored_commits("upstream", "b", "alice")
        same = gh._client() is first
        await gh.aclose()
        return same, first.is_closed

    assert asyncio.run(_run()) == (True, True)


def test_forks_worth_checking_drops_forks_below_the_top_n() -> None:
    repos = [
        make_repo("alice", "own-a", stars=30),
        make_repo("alice", "own-b", stars=20),
        make_repo("alice", "star-fork", stars=25, fork=True),
        make_repo("alice", "dim-fork", stars=5, fork=True),
    ]
    assert [r.name for r in forks_worth_checking(repos, limit=2)] == ["star-fork"]
    # Fewer own repos than the limit: every fork could still make the cut.
    assert [r.name for r in forks_worth_checking(repos, limit=3)] == ["star-fork", "dim-fork"]
