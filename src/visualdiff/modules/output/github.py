"""
GitHub integration: commit statuses and commit comments over the REST API.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ...core.errors import ExternalServiceError
from ...core.models import ServiceDescriptor

logger = logging.getLogger(__name__)

GITHUB_STATES = {"pending", "success", "failure", "error"}


class GithubClient(Protocol):
    """Protocol implemented by concrete HTTP clients."""

    async def send_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> None: ...


class HttpxGithubClient:
    """GitHub client implemented with httpx."""

    def __init__(self, *, timeout: float = 15.0) -> None:
        self._timeout = timeout

    async def send_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.request(method, url, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise ExternalServiceError(str(exc)) from exc


class GithubService:
    """VCS service that reports build outcomes on GitHub commits."""

    service_key = "github"

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        context: str = "CI - Visual",
        client: GithubClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._context = context
        self._client = client or HttpxGithubClient(timeout=timeout)

    async def set_build_status(self, service: ServiceDescriptor, *, sha: str, status: str) -> None:
        if status not in GITHUB_STATES:
            raise ExternalServiceError(f"GitHub does not accept commit state {status!r}")
        url = f"{self._repo_url(service)}/statuses/{sha}"
        await self._client.send_json(
            url=url,
            payload={
                "state": status,
                "context": self._context,
                "description": _DESCRIPTIONS[status],
            },
            headers=self._headers(),
        )
        logger.info("Set GitHub status %s on %s", status, sha)

    async def add_comment(self, service: ServiceDescriptor, *, sha: str, comment: str) -> None:
        url = f"{self._repo_url(service)}/commits/{sha}/comments"
        await self._client.send_json(url=url, payload={"body": comment}, headers=self._headers())
        logger.info("Commented on GitHub commit %s", sha)

    def _repo_url(self, service: ServiceDescriptor) -> str:
        options = service.options
        owner = options.get("user") or options.get("owner")
        repository = options.get("repository") or options.get("repo")
        if not owner or not repository:
            raise ExternalServiceError(
                "GitHub service options must define 'user' and 'repository'"
            )
        return f"{self._api_url}/repos/{owner}/{repository}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers


_DESCRIPTIONS = {
    "pending": "Waiting for screenshots",
    "success": "No visual differences",
    "failure": "Visual differences found",
    "error": "Visual comparison failed",
}


__all__ = ["GithubClient", "GithubService", "HttpxGithubClient"]
