from __future__ import annotations

import httpx
import pytest

from visualdiff.core.errors import ExternalServiceError
from visualdiff.core.models import ServiceDescriptor
from visualdiff.modules.output.github import GithubService, HttpxGithubClient

REPO = ServiceDescriptor(name="github", options={"user": "acme", "repository": "web"})


class StubGithubClient:
    def __init__(self) -> None:
        self.calls: list[dict[str, object]] = []

    async def send_json(
        self,
        *,
        url: str,
        payload: dict[str, object],
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.calls.append(
            {"url": url, "payload": payload, "method": method, "headers": headers or {}}
        )


@pytest.mark.asyncio
async def test_set_build_status_posts_commit_status() -> None:
    client = StubGithubClient()
    service = GithubService(token="ghp_test", client=client)

    await service.set_build_status(REPO, sha="abc123", status="failure")

    call = client.calls[0]
    assert call["url"] == "https://api.github.com/repos/acme/web/statuses/abc123"
    assert call["method"] == "POST"
    assert call["payload"]["state"] == "failure"
    assert call["payload"]["context"] == "CI - Visual"
    assert call["headers"]["Authorization"] == "Bearer ghp_test"


@pytest.mark.asyncio
async def test_add_comment_posts_commit_comment() -> None:
    client = StubGithubClient()
    service = GithubService(api_url="https://ghe.example.test/api/v3/", client=client)

    await service.add_comment(REPO, sha="abc123", comment="Diffs found")

    call = client.calls[0]
    assert call["url"] == "https://ghe.example.test/api/v3/repos/acme/web/commits/abc123/comments"
    assert call["payload"] == {"body": "Diffs found"}
    assert "Authorization" not in call["headers"]


@pytest.mark.asyncio
async def test_owner_and_repo_aliases_are_accepted() -> None:
    client = StubGithubClient()
    service = GithubService(client=client)
    descriptor = ServiceDescriptor(name="github", options={"owner": "acme", "repo": "api"})

    await service.set_build_status(descriptor, sha="s", status="pending")

    assert client.calls[0]["url"].endswith("/repos/acme/api/statuses/s")


@pytest.mark.asyncio
async def test_missing_repository_options_raise() -> None:
    service = GithubService(client=StubGithubClient())
    with pytest.raises(ExternalServiceError):
        await service.set_build_status(
            ServiceDescriptor(name="github"), sha="s", status="success"
        )


@pytest.mark.asyncio
async def test_unknown_commit_state_raises() -> None:
    client = StubGithubClient()
    service = GithubService(client=client)
    with pytest.raises(ExternalServiceError):
        await service.set_build_status(REPO, sha="s", status="approved")
    assert client.calls == []


@pytest.mark.asyncio
async def test_httpx_client_wraps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "Validation Failed"})

    original = httpx.AsyncClient

    def factory(*args, **kwargs) -> httpx.AsyncClient:
        return original(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)

    with pytest.raises(ExternalServiceError):
        await HttpxGithubClient().send_json(url="https://api.github.test/x", payload={})
