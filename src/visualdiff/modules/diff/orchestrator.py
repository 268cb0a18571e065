"""
Diff orchestration: decide when a build is complete and compare head to base.

The orchestrator listens for `ImagesChanged` payloads, evaluates every build
that references the sha, and fans out browser -> image -> pixel comparisons.
It keeps no durable state: every decision is recomputed from the store, so
repeated notifications are harmless. Verdicts are published as
`BuildStatusChanged` payloads for the notification relay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from ...core.bus import Subscription
from ...core.contracts import (
    BUILD_STATUS_TOPIC,
    IMAGES_CHANGED_TOPIC,
    BaseModule,
    BuildStatusChanged,
    HealthStatus,
    ImagesChanged,
    ModuleConfig,
)
from ...core.errors import (
    DiffPersistenceError,
    DiffPipelineError,
    InvalidTransition,
    UnknownSha,
)
from ...core.locks import KeyedLock
from ...core.models import BuildInfo, BuildStatus
from ...core.summary import render_markdown_summary
from ..storage.filesystem import FileSystemStore
from .pixel import ImageComparator, PixelDiffer

logger = logging.getLogger(__name__)

K = TypeVar("K")


def _collect(level: str, keys: Sequence[K], results: Sequence[Any]) -> list[tuple[K, Any]]:
    """
    Pair fan-out results with their keys, dropping failed branches.

    Persistence failures are re-raised immediately. When every branch failed
    there is nothing to aggregate and `DiffPipelineError` is raised.
    """
    successes: list[tuple[K, Any]] = []
    errors: list[BaseException] = []
    for key, result in zip(keys, results, strict=True):
        if isinstance(result, DiffPersistenceError):
            raise result
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning("Comparison of %s %s failed: %s", level, key, result)
            errors.append(result)
            continue
        successes.append((key, result))
    if errors and not successes:
        raise DiffPipelineError(f"All {len(errors)} {level} comparisons failed", errors)
    return successes


class DiffOrchestrator(BaseModule):
    """Drive build -> browser -> image comparisons and record verdicts."""

    name = "modules.diff.orchestrator"

    def __init__(
        self,
        *,
        store: FileSystemStore,
        differ: ImageComparator | None = None,
        threshold: float = 0.0,
        public_url: str = "http://localhost:8999",
    ) -> None:
        super().__init__()
        self._store = store
        self._differ = differ or PixelDiffer()
        self._threshold = threshold
        self._public_url = public_url
        self._input_topic = IMAGES_CHANGED_TOPIC
        self._output_topic = BUILD_STATUS_TOPIC
        self._subscription: Subscription | None = None
        self._build_locks = KeyedLock()
        self._resolved_total = 0
        self._failed_evaluations = 0

    @property
    def threshold(self) -> float:
        return self._threshold

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._input_topic = options.get("input_topic", self._input_topic)
        self._output_topic = options.get("output_topic", self._output_topic)
        self._threshold = float(options.get("threshold", self._threshold))
        if self._threshold < 0:
            raise ValueError("threshold must not be negative")
        self._public_url = options.get("public_url", self._public_url)

    async def start(self) -> None:
        self._subscription = self.bus.subscribe(self._input_topic, self._handle_images_changed)
        logger.info(
            "DiffOrchestrator listening on %s (threshold %.4f)", self._input_topic, self._threshold
        )

    async def stop(self) -> None:
        if self._subscription:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None

    async def health(self) -> HealthStatus:
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(
            status=status,
            details={
                "resolved_total": self._resolved_total,
                "failed_evaluations": self._failed_evaluations,
            },
        )

    async def _handle_images_changed(self, topic: str, payload: ImagesChanged) -> None:
        if not isinstance(payload, ImagesChanged):
            logger.debug("Ignoring non ImagesChanged payload on %s", topic)
            return
        await self.on_images_changed(payload.project, payload.sha)

    # Entry points --------------------------------------------------------

    async def on_images_changed(self, project: str, sha: str) -> list[Exception]:
        """
        Evaluate every build referencing ``sha`` concurrently.

        Returns the failures of individual builds; one build failing never
        prevents its siblings from being evaluated.
        """
        builds = await self._store.get_builds_for_sha(project, sha)
        if not builds:
            logger.debug("No builds reference sha %s of project %s", sha, project)
            return []
        results = await asyncio.gather(
            *(self.evaluate_build(project, build) for build in builds), return_exceptions=True
        )
        failures: list[Exception] = []
        for build, result in zip(builds, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self._failed_evaluations += 1
                logger.error(
                    "Evaluating build %s of project %s failed: %s", build, project, result
                )
                failures.append(result)
        return failures

    async def evaluate_build(self, project: str, build: str) -> BuildInfo | None:
        """
        Diff ``build`` if it is pending and every expected browser reported.

        Returns the updated build when a verdict was recorded, otherwise None.
        """
        async with self._build_locks.hold((project, build)):
            info = await self._store.get_build_info(project, build)
            if info.status is not BuildStatus.PENDING:
                logger.debug("Build %s already %s; skipping", build, info.status.value)
                return None
            browsers = await self._reported_browsers(project, info.head)
            if len(browsers) < info.num_browsers:
                logger.info(
                    "Build %s waiting for browsers (%d/%d reported)",
                    build,
                    len(browsers),
                    info.num_browsers,
                )
                return None
            if not await self._reported_browsers(project, info.base):
                logger.info("Build %s waiting for base %s screenshots", build, info.base)
                return None
            diffs = await self.diff_browsers(project, build, info.head, info.base)
            status = BuildStatus.FAILED if diffs else BuildStatus.SUCCESS
            updated = await self._store.update_build_info(
                project, build, status=status, diffs=diffs if diffs else None
            )
        self._resolved_total += 1
        message = None
        if diffs:
            message = render_markdown_summary(
                public_url=self._public_url, project=project, build=build, diffs=diffs
            )
        await self.bus.publish(
            self._output_topic,
            BuildStatusChanged(
                project=project,
                build=build,
                sha=info.head,
                status=status,
                diffs=diffs,
                message=message,
            ),
        )
        logger.info("Build %s of project %s resolved as %s", build, project, status.value)
        return updated

    async def approve_build(self, project: str, build: str) -> BuildInfo:
        """Manually accept a failed build; reported downstream as a success."""
        async with self._build_locks.hold((project, build)):
            info = await self._store.get_build_info(project, build)
            if info.status is not BuildStatus.FAILED:
                raise InvalidTransition(
                    f"Build {build} is {info.status.value}; only failed builds can be approved"
                )
            updated = await self._store.update_build_info(
                project, build, status=BuildStatus.APPROVED
            )
        await self.bus.publish(
            self._output_topic,
            BuildStatusChanged(
                project=project,
                build=build,
                sha=info.head,
                status=BuildStatus.APPROVED,
                diffs=info.diffs or {},
            ),
        )
        logger.info("Build %s of project %s approved", build, project)
        return updated

    async def _reported_browsers(self, project: str, sha: str) -> list[str]:
        try:
            return await self._store.get_browsers_for_sha(project, sha)
        except UnknownSha:
            return []

    # Fan-out comparison --------------------------------------------------

    async def diff_browsers(
        self, project: str, build: str, head: str, base: str
    ) -> dict[str, list[str]]:
        """Map each common browser to its differing images, omitting clean browsers."""
        head_browsers, base_browsers = await asyncio.gather(
            self._store.get_browsers_for_sha(project, head),
            self._store.get_browsers_for_sha(project, base),
        )
        base_set = set(base_browsers)
        common = [browser for browser in head_browsers if browser in base_set]
        if not common:
            return {}
        results = await asyncio.gather(
            *(self.diff_images(project, build, head, base, browser) for browser in common),
            return_exceptions=True,
        )
        collected = _collect("browser", common, results)
        return {browser: images for browser, images in collected if images}

    async def diff_images(
        self, project: str, build: str, head: str, base: str, browser: str
    ) -> list[str]:
        """Ordered names of the images of ``browser`` that differ between head and base."""
        head_images, base_images = await asyncio.gather(
            self._store.get_images_for_sha_browser(project, head, browser),
            self._store.get_images_for_sha_browser(project, base, browser),
        )
        base_set = set(base_images)
        common = [image for image in head_images if image in base_set]
        if not common:
            return []
        results = await asyncio.gather(
            *(self.diff_image(project, build, head, base, browser, image) for image in common),
            return_exceptions=True,
        )
        return [image for image, differs in _collect("image", common, results) if differs]

    async def diff_image(
        self, project: str, build: str, head: str, base: str, browser: str, image: str
    ) -> bool:
        """Compare one image; persist the rendered diff before reporting a difference."""
        head_image, base_image = await asyncio.gather(
            self._store.get_image(project, head, browser, image),
            self._store.get_image(project, base, browser, image),
        )
        result = await self._differ.compare(head_image, base_image)
        if result.distance <= self._threshold:
            return False
        try:
            await self._store.save_diff_image(project, build, browser, image, result.diff_image)
        except Exception as exc:
            raise DiffPersistenceError(
                f"Could not store diff for {browser}/{image} of build {build}: {exc}"
            ) from exc
        logger.debug(
            "Image %s/%s differs in build %s (distance %.4f)", browser, image, build, result.distance
        )
        return True


__all__ = ["DiffOrchestrator"]
