"""
Collection of modular visualdiff components grouped by responsibility.
"""

from .dashboard.api import VisualDiffApi
from .diff.orchestrator import DiffOrchestrator
from .diff.pixel import PixelDiffer
from .output.github import GithubService
from .output.relay import NotificationRelay
from .output.services import ServiceRegistry
from .status.prometheus_exporter import PrometheusExporter
from .storage.filesystem import FileSystemStore

__all__ = [
    "DiffOrchestrator",
    "FileSystemStore",
    "GithubService",
    "NotificationRelay",
    "PixelDiffer",
    "PrometheusExporter",
    "ServiceRegistry",
    "VisualDiffApi",
]
