"""
Contracts and payload schemas shared by visualdiff modules.

Payloads are immutable pydantic models carried on the event bus. Modules
implement the `BaseModule` lifecycle and receive their collaborators
(store, differ, services) through their constructors.
"""

from __future__ import annotations

import abc
import datetime as dt
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from .models import BuildStatus

IMAGES_CHANGED_TOPIC = "diff.sha"
BUILD_STATUS_TOPIC = "build.status"
BUS_STATUS_TOPIC = "status.bus"


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )
    timestamp_utc: dt.datetime = Field(
        default_factory=lambda: dt.datetime.now(tz=dt.UTC),
        description="When the payload was created.",
    )


class ImagesChanged(BasePayload):
    """New screenshots landed for a sha of a project."""

    project: str
    sha: str
    browser: str | None = Field(default=None, description="Browser that just uploaded.")


class BuildStatusChanged(BasePayload):
    """A build moved to a new status; consumed by the notification relay."""

    project: str
    build: str
    sha: str = Field(description="Head sha the status applies to.")
    status: BuildStatus
    diffs: dict[str, list[str]] = Field(default_factory=dict)
    message: str | None = Field(
        default=None, description="Rendered markdown summary for failed builds."
    )


class BusStatus(BasePayload):
    """Telemetry snapshot emitted by the event bus on `status.bus`."""

    queue_depth: int = Field(ge=0)
    queue_capacity: int = Field(gt=0)
    subscriber_count: int = Field(ge=0)
    in_flight: int = Field(ge=0, description="Handler tasks currently running.")
    published_total: int = Field(ge=0)
    processed_total: int = Field(ge=0)
    failed_total: int = Field(ge=0, description="Handler invocations that raised.")


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


@runtime_checkable
class EventHandler(Protocol):
    """Callable type for bus subscribers."""

    async def __call__(self, topic: str, payload: BasePayload) -> None: ...


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Abstract base class for all visualdiff components.

    Modules receive an event bus instance and are responsible for
    subscribing to topics during `start`.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.__class__.__name__} has not been attached to an EventBus.")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus instance to the module."""
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to module start."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin processing by registering bus subscriptions or scheduling tasks."""

    async def stop(self) -> None:
        return None

    async def health(self) -> HealthStatus:
        """Return a basic health status; modules can override for richer diagnostics."""
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BUILD_STATUS_TOPIC",
    "BUS_STATUS_TOPIC",
    "IMAGES_CHANGED_TOPIC",
    "BaseModule",
    "BasePayload",
    "BuildStatusChanged",
    "BusStatus",
    "EventHandler",
    "HealthStatus",
    "ImagesChanged",
    "ModuleConfig",
]
