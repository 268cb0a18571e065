"""
Typed failures raised by the store, the diff pipeline, and service adapters.
"""

from __future__ import annotations


class VisualDiffError(RuntimeError):
    """Base class for every error raised by visualdiff."""


class NotFoundError(VisualDiffError):
    """A project, build, sha, browser, or image does not exist."""


class UnknownProject(NotFoundError):
    def __init__(self, project: str) -> None:
        super().__init__(f"Unknown Project: {project}")
        self.project = project


class UnknownBuild(NotFoundError):
    def __init__(self, project: str, build: str) -> None:
        super().__init__(f"Unknown Build: {build} (project {project})")
        self.project = project
        self.build = build


class UnknownSha(NotFoundError):
    def __init__(self, project: str, sha: str) -> None:
        super().__init__(f"Unknown Sha: {sha} (project {project})")
        self.project = project
        self.sha = sha


class UnknownBrowser(NotFoundError):
    def __init__(self, project: str, sha: str, browser: str) -> None:
        super().__init__(f"Unknown Browser: {browser} for sha {sha} (project {project})")
        self.project = project
        self.sha = sha
        self.browser = browser


class UnknownImage(NotFoundError):
    def __init__(self, location: str, image: str) -> None:
        super().__init__(f"Unknown Image: {image} in {location}")
        self.location = location
        self.image = image


class InvalidArgument(VisualDiffError, ValueError):
    """Missing or malformed input rejected before any store mutation."""


class InvalidTransition(InvalidArgument):
    """Requested build status change is not allowed from the current status."""


class DiffPipelineError(VisualDiffError):
    """Every branch of a fan-out comparison failed, so no verdict can be assembled."""

    def __init__(self, message: str, errors: list[BaseException] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class DiffPersistenceError(VisualDiffError):
    """Writing a diff artifact failed; the verdict must not be recorded."""


class ExternalServiceError(VisualDiffError):
    """A call to an external VCS service failed."""


__all__ = [
    "DiffPersistenceError",
    "DiffPipelineError",
    "ExternalServiceError",
    "InvalidArgument",
    "InvalidTransition",
    "NotFoundError",
    "UnknownBrowser",
    "UnknownBuild",
    "UnknownImage",
    "UnknownProject",
    "UnknownSha",
    "VisualDiffError",
]
