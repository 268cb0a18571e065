"""HTTP surfaces."""

from .api import VisualDiffApi

__all__ = ["VisualDiffApi"]
