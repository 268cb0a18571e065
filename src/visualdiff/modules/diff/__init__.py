"""Build evaluation and pixel comparison."""

from .orchestrator import DiffOrchestrator
from .pixel import ComparisonResult, ImageComparator, PixelDiffer

__all__ = ["ComparisonResult", "DiffOrchestrator", "ImageComparator", "PixelDiffer"]
