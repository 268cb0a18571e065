"""
Persistent records and boundary requests for projects and builds.

Records are stored as JSON. Python attributes are snake_case while the JSON
keeps the camelCase ``numBrowsers`` field used by upload clients.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .errors import InvalidArgument


class BuildStatus(StrEnum):
    """Lifecycle of a build comparison."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    APPROVED = "approved"

    @property
    def resolved(self) -> bool:
        return self is not BuildStatus.PENDING


class ServiceDescriptor(BaseModel):
    """Which external VCS integration governs a project."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


class ProjectInfo(BaseModel):
    """Project metadata; any extra creation fields are kept verbatim."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    service: ServiceDescriptor | None = None


class BuildInfo(BaseModel):
    """A single head-vs-base comparison request."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    project: str
    head: str
    base: str
    num_browsers: int = Field(
        ge=1,
        validation_alias=AliasChoices("num_browsers", "numBrowsers"),
        serialization_alias="numBrowsers",
    )
    status: BuildStatus = BuildStatus.PENDING
    diffs: dict[str, list[str]] | None = None

    def to_record(self) -> dict[str, Any]:
        """JSON-ready dict using the wire field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} must be a non-empty string")
    return value


class StartBuildRequest(BaseModel):
    """Validated body of a start-build call."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project: str
    head: str
    base: str
    num_browsers: int = Field(
        strict=True,
        ge=1,
        validation_alias=AliasChoices("num_browsers", "numBrowsers"),
    )

    @field_validator("project", "head", "base", mode="before")
    @classmethod
    def _non_empty(cls, value: Any, info: ValidationInfo) -> str:
        return _require_text(value, info.field_name)


class BuildRef(BaseModel):
    """Addresses one build of a project (get-build and confirm calls)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project: str
    build: str = Field(validation_alias=AliasChoices("build", "id"))

    @field_validator("project", "build", mode="before")
    @classmethod
    def _non_empty(cls, value: Any, info: ValidationInfo) -> str:
        return _require_text(value, info.field_name)


class CreateProjectRequest(BaseModel):
    """Body of a create-project call; unknown fields are persisted as-is."""

    model_config = ConfigDict(extra="allow")

    service: ServiceDescriptor

    @model_validator(mode="before")
    @classmethod
    def _require_mapping(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("project info must be an object")
        return data


def parse_request(model: type[BaseModel], data: Any) -> Any:
    """Validate ``data`` against ``model`` and surface failures as InvalidArgument."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidArgument(f"invalid arguments: {exc.error_count()} error(s)") from exc


__all__ = [
    "BuildInfo",
    "BuildRef",
    "BuildStatus",
    "CreateProjectRequest",
    "ProjectInfo",
    "ServiceDescriptor",
    "StartBuildRequest",
    "parse_request",
]
