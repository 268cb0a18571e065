"""
Core infrastructure for visualdiff.

Exposes the event bus, payload contracts, persistent models, typed errors,
configuration, and the module lifecycle orchestrator.
"""

from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BUILD_STATUS_TOPIC,
    IMAGES_CHANGED_TOPIC,
    BaseModule,
    BasePayload,
    BuildStatusChanged,
    HealthStatus,
    ImagesChanged,
    ModuleConfig,
)
from .errors import (
    InvalidArgument,
    NotFoundError,
    UnknownBuild,
    UnknownProject,
    VisualDiffError,
)
from .models import BuildInfo, BuildStatus, ProjectInfo, ServiceDescriptor
from .orchestrator import Orchestrator

__all__ = [
    "BUILD_STATUS_TOPIC",
    "IMAGES_CHANGED_TOPIC",
    "BaseModule",
    "BasePayload",
    "BuildInfo",
    "BuildStatus",
    "BuildStatusChanged",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "EventBus",
    "HealthStatus",
    "ImagesChanged",
    "InvalidArgument",
    "ModuleConfig",
    "NotFoundError",
    "Orchestrator",
    "ProjectInfo",
    "ServiceDescriptor",
    "Subscription",
    "UnknownBuild",
    "UnknownProject",
    "VisualDiffError",
]
