"""Outbound integrations that report build verdicts."""

from .github import GithubService, HttpxGithubClient
from .relay import NotificationRelay
from .services import ServiceRegistry, VcsService

__all__ = [
    "GithubService",
    "HttpxGithubClient",
    "NotificationRelay",
    "ServiceRegistry",
    "VcsService",
]
