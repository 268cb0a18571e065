"""
Hierarchical filesystem store for projects, builds, screenshots, and diffs.

Layout below the configured root::

    project/{id}/project.json
    project/{id}/builds/{build}/build.json
    project/{id}/builds/{build}/{browser}/{image}      diff artifacts
    project/{id}/shas/{sha}/builds.json                builds-for-sha index
    project/{id}/shas/{sha}/{browser}/{image}          uploaded screenshots

All operations are coroutines; blocking file I/O runs in worker threads.
JSON records are replaced atomically, and read-modify-write updates of the
builds-for-sha index and of build records are serialised per key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path, PurePosixPath
from typing import Any

from ...core.errors import (
    InvalidArgument,
    UnknownBrowser,
    UnknownBuild,
    UnknownImage,
    UnknownProject,
    UnknownSha,
)
from ...core.locks import KeyedLock
from ...core.models import BuildInfo, BuildStatus, ProjectInfo, parse_request
from .archive import extract_archive, list_files

logger = logging.getLogger(__name__)

PROJECT_FILE = "project.json"
BUILD_FILE = "build.json"
SHA_INDEX_FILE = "builds.json"
_RESERVED = {PROJECT_FILE, BUILD_FILE, SHA_INDEX_FILE}


def _component(value: Any, field: str) -> str:
    """Validate a single path segment (project, build, sha, browser)."""
    if not isinstance(value, str) or not value or value.strip() != value:
        raise InvalidArgument(f"{field} must be a non-empty string")
    if value.startswith(".") or any(char in value for char in "/\\\0"):
        raise InvalidArgument(f"{field} contains illegal characters: {value!r}")
    if value in _RESERVED:
        raise InvalidArgument(f"{field} uses a reserved name: {value!r}")
    return value


def _relative(value: Any, field: str = "image") -> PurePosixPath:
    """Validate an image name, which may contain sub-directories."""
    if not isinstance(value, str) or not value or "\\" in value or "\0" in value:
        raise InvalidArgument(f"{field} must be a non-empty relative path")
    path = PurePosixPath(value)
    if path.is_absolute() or any(part in {"", ".", ".."} for part in path.parts):
        raise InvalidArgument(f"{field} must stay inside its directory: {value!r}")
    return path


def _read_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, data: Mapping[str, Any]) -> None:
    _write_bytes(path, json.dumps(data, indent=2, sort_keys=True).encode("utf-8"))


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileSystemStore:
    """Persistent repository owning every project, build, and image."""

    def __init__(
        self,
        root: str | Path,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._root = Path(root)
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._locks = KeyedLock()

    @property
    def root(self) -> Path:
        return self._root

    # Paths ---------------------------------------------------------------

    def _project_dir(self, project: str) -> Path:
        return self._root / "project" / _component(project, "project")

    def _build_dir(self, project: str, build: str) -> Path:
        return self._project_dir(project) / "builds" / _component(build, "build")

    def _sha_dir(self, project: str, sha: str) -> Path:
        return self._project_dir(project) / "shas" / _component(sha, "sha")

    async def _require_project(self, project: str) -> Path:
        project_dir = self._project_dir(project)
        if not await asyncio.to_thread((project_dir / PROJECT_FILE).is_file):
            raise UnknownProject(project)
        return project_dir

    async def _require_build(self, project: str, build: str) -> Path:
        await self._require_project(project)
        build_dir = self._build_dir(project, build)
        if not await asyncio.to_thread((build_dir / BUILD_FILE).is_file):
            raise UnknownBuild(project, build)
        return build_dir

    # Projects ------------------------------------------------------------

    async def create_project(self, info: Mapping[str, Any]) -> str:
        """Persist ``info`` verbatim plus a freshly allocated id; return the id."""
        if not isinstance(info, Mapping):
            raise InvalidArgument("project info must be an object")
        project = self._id_factory()
        record = {**dict(info), "id": project}
        parse_request(ProjectInfo, record)
        await asyncio.to_thread(_write_json, self._project_dir(project) / PROJECT_FILE, record)
        logger.info("Created project %s", project)
        return project

    async def has_project(self, project: str) -> bool:
        try:
            await self._require_project(project)
        except (InvalidArgument, UnknownProject):
            return False
        return True

    async def get_project_info(self, project: str) -> ProjectInfo:
        project_dir = await self._require_project(project)
        record = await asyncio.to_thread(_read_json, project_dir / PROJECT_FILE)
        return ProjectInfo.model_validate(record)

    # Builds --------------------------------------------------------------

    async def start_build(self, *, project: str, head: str, base: str, num_browsers: int) -> str:
        """
        Record a pending build and index it under both shas.

        Returns the new build id.
        """
        _component(head, "head")
        _component(base, "base")
        if isinstance(num_browsers, bool) or not isinstance(num_browsers, int) or num_browsers < 1:
            raise InvalidArgument("numBrowsers must be a positive integer")
        await self._require_project(project)
        build = self._id_factory()
        info = BuildInfo(
            id=build,
            project=project,
            head=head,
            base=base,
            num_browsers=num_browsers,
            status=BuildStatus.PENDING,
        )
        build_file = self._build_dir(project, build) / BUILD_FILE
        await asyncio.to_thread(_write_json, build_file, info.to_record())
        for sha in dict.fromkeys((head, base)):
            await self._append_build_to_sha(project, sha, build)
        logger.info("Started build %s for project %s (%s vs %s)", build, project, head, base)
        return build

    async def _append_build_to_sha(self, project: str, sha: str, build: str) -> None:
        index_file = self._sha_dir(project, sha) / SHA_INDEX_FILE

        def _append() -> None:
            builds = _read_json(index_file).get("builds", []) if index_file.is_file() else []
            if build not in builds:
                builds.append(build)
            _write_json(index_file, {"builds": builds})

        async with self._locks.hold((project, "sha", sha)):
            await asyncio.to_thread(_append)

    async def get_builds_for_sha(self, project: str, sha: str) -> list[str]:
        """Build ids referencing ``sha`` as head or base, in start order."""
        await self._require_project(project)
        index_file = self._sha_dir(project, sha) / SHA_INDEX_FILE
        if not await asyncio.to_thread(index_file.is_file):
            return []
        record = await asyncio.to_thread(_read_json, index_file)
        return list(record.get("builds", []))

    async def has_build(self, project: str, build: str) -> bool:
        try:
            await self._require_build(project, build)
        except (InvalidArgument, UnknownProject, UnknownBuild):
            return False
        return True

    async def get_build_info(self, project: str, build: str) -> BuildInfo:
        build_dir = await self._require_build(project, build)
        record = await asyncio.to_thread(_read_json, build_dir / BUILD_FILE)
        return BuildInfo.model_validate(record)

    async def update_build_info(
        self,
        project: str,
        build: str,
        *,
        status: BuildStatus,
        diffs: Mapping[str, list[str]] | None = None,
    ) -> BuildInfo:
        """
        Overwrite the status of an existing build.

        ``failed`` stores ``diffs``; ``success`` and ``pending`` drop them;
        ``approved`` keeps the diffs that were approved unless new ones are given.
        """
        status = BuildStatus(status)
        build_dir = await self._require_build(project, build)
        build_file = build_dir / BUILD_FILE
        async with self._locks.hold((project, "build", build)):
            record = await asyncio.to_thread(_read_json, build_file)
            info = BuildInfo.model_validate(record)
            updates: dict[str, Any] = {"status": status}
            if status is BuildStatus.FAILED:
                source = diffs if diffs is not None else (info.diffs or {})
                updates["diffs"] = {k: list(v) for k, v in source.items()}
            elif status is BuildStatus.APPROVED:
                if diffs is not None:
                    updates["diffs"] = {k: list(v) for k, v in diffs.items()}
            else:
                updates["diffs"] = None
            info = info.model_copy(update=updates)
            await asyncio.to_thread(_write_json, build_file, info.to_record())
        logger.info("Build %s of project %s is now %s", build, project, status.value)
        return info

    # Screenshots ---------------------------------------------------------

    async def save_images(
        self, *, project: str, sha: str, browser: str, archive: str | Path
    ) -> list[str]:
        """Replace the screenshots of ``browser`` for ``sha`` with the archive content."""
        await self._require_project(project)
        destination = self._sha_dir(project, sha) / _component(browser, "browser")
        async with self._locks.hold((project, "images", sha, browser)):
            files = await asyncio.to_thread(extract_archive, archive, destination)
        logger.info(
            "Saved %d images for project %s sha %s browser %s", len(files), project, sha, browser
        )
        return files

    async def get_browsers_for_sha(self, project: str, sha: str) -> list[str]:
        await self._require_project(project)
        sha_dir = self._sha_dir(project, sha)

        def _browsers() -> list[str]:
            if not sha_dir.is_dir():
                raise UnknownSha(project, sha)
            return sorted(
                entry.name
                for entry in sha_dir.iterdir()
                if entry.is_dir() and not entry.name.startswith(".")
            )

        return await asyncio.to_thread(_browsers)

    async def get_images_for_sha_browser(self, project: str, sha: str, browser: str) -> list[str]:
        await self._require_project(project)
        sha_dir = self._sha_dir(project, sha)
        browser_dir = sha_dir / _component(browser, "browser")

        def _images() -> list[str]:
            if not sha_dir.is_dir():
                raise UnknownSha(project, sha)
            if not browser_dir.is_dir():
                raise UnknownBrowser(project, sha, browser)
            return list_files(browser_dir)

        return await asyncio.to_thread(_images)

    async def get_image(self, project: str, sha: str, browser: str, image: str) -> bytes:
        await self._require_project(project)
        path = self._sha_dir(project, sha) / _component(browser, "browser") / _relative(image)
        return await self._read_blob(path, f"{project}/{sha}/{browser}", image)

    # Diff artifacts ------------------------------------------------------

    async def get_diff(self, project: str, build: str, browser: str, image: str) -> bytes:
        build_dir = await self._require_build(project, build)
        path = build_dir / _component(browser, "browser") / _relative(image)
        return await self._read_blob(path, f"{project}/{build}/{browser}", image)

    async def save_diff_image(
        self, project: str, build: str, browser: str, image: str, data: bytes
    ) -> Path:
        build_dir = await self._require_build(project, build)
        path = build_dir / _component(browser, "browser") / _relative(image)
        await asyncio.to_thread(_write_bytes, path, data)
        logger.debug("Saved diff artifact %s", path)
        return path

    async def _read_blob(self, path: Path, location: str, image: str) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise UnknownImage(location, image) from exc


__all__ = ["FileSystemStore"]
