"""
Screenshot archive extraction.

Uploads arrive as (optionally compressed) tarballs. Extraction refuses members
that would escape the destination and flattens a single top-level wrapper
directory so that images land directly under it. The previous content of the
destination is replaced only after the whole archive was read successfully.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath

from ...core.errors import InvalidArgument

logger = logging.getLogger(__name__)


def list_files(root: Path) -> list[str]:
    """Sorted POSIX paths of every regular file below ``root``."""
    return sorted(path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file())


def _safe_members(archive: tarfile.TarFile) -> list[tarfile.TarInfo]:
    members = []
    for member in archive.getmembers():
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts:
            raise InvalidArgument(f"archive member escapes destination: {member.name}")
        if member.isdir() or member.isfile():
            members.append(member)
        else:
            logger.debug("Skipping non-regular archive member %s", member.name)
    return members


def _flatten_wrapper(destination: Path) -> None:
    files = list_files(destination)
    if not files:
        return
    heads = {PurePosixPath(file).parts[0] for file in files}
    if len(heads) != 1 or any(len(PurePosixPath(file).parts) < 2 for file in files):
        return
    # Rename first so a child sharing the wrapper's name can move up.
    wrapper = (destination / heads.pop()).rename(destination / ".unwrap")
    for child in list(wrapper.iterdir()):
        shutil.move(str(child), str(destination / child.name))
    wrapper.rmdir()


def extract_archive(archive: str | Path, destination: str | Path) -> list[str]:
    """
    Extract ``archive`` into ``destination`` and return the extracted file names.

    The archive is unpacked into a hidden sibling directory first; the previous
    content of ``destination`` is only replaced once extraction succeeded.
    Raises InvalidArgument when the file is not a readable tar archive.
    """
    archive_path = Path(archive)
    target = Path(destination)
    created_parent = not target.parent.exists()
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}."))
    try:
        with tarfile.open(archive_path, mode="r:*") as tar:
            tar.extractall(staging, members=_safe_members(tar), filter="data")
    except (tarfile.TarError, FileNotFoundError, InvalidArgument) as exc:
        shutil.rmtree(staging, ignore_errors=True)
        if created_parent:
            with contextlib.suppress(OSError):
                target.parent.rmdir()
        if isinstance(exc, InvalidArgument):
            raise
        raise InvalidArgument(f"unreadable image archive {archive_path.name}: {exc}") from exc
    _flatten_wrapper(staging)
    files = list_files(staging)
    _swap_into_place(staging, target)
    logger.debug("Extracted %d files from %s into %s", len(files), archive_path, target)
    return files


def _swap_into_place(staging: Path, target: Path) -> None:
    if not target.exists():
        staging.rename(target)
        return
    retired = staging.with_name(f"{staging.name}.old")
    target.rename(retired)
    staging.rename(target)
    shutil.rmtree(retired)


__all__ = ["extract_archive", "list_files"]
