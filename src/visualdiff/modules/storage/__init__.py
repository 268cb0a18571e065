"""Persistent storage for projects, builds, screenshots, and diff artifacts."""

from .archive import extract_archive, list_files
from .filesystem import FileSystemStore

__all__ = ["FileSystemStore", "extract_archive", "list_files"]
