"""
visualdiff - visual regression diffing for CI pipelines

Collects per-browser screenshot sets for head and base commits, compares them
once every expected browser has reported, and reports the verdict back to the
project's version-control service.
"""

__version__ = "0.1.0"

from visualdiff.core import BuildInfo, BuildStatus, EventBus, Orchestrator, ProjectInfo

__all__ = ["BuildInfo", "BuildStatus", "EventBus", "Orchestrator", "ProjectInfo", "__version__"]
