"""
Forward build status changes to the project's external VCS service.

Notification is best-effort: a failing service call is logged and counted,
but the verdict already written to the store is never rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable

from ...core.bus import Subscription
from ...core.contracts import (
    BUILD_STATUS_TOPIC,
    BaseModule,
    BuildStatusChanged,
    HealthStatus,
    ModuleConfig,
)
from ...core.errors import ExternalServiceError
from ...core.locks import KeyedLock
from ...core.models import BuildStatus
from ...core.summary import render_markdown_summary
from ..storage.filesystem import FileSystemStore
from .services import ServiceRegistry, VcsService

logger = logging.getLogger(__name__)

COMMIT_STATES: dict[BuildStatus, str] = {
    BuildStatus.PENDING: "pending",
    BuildStatus.SUCCESS: "success",
    BuildStatus.APPROVED: "success",
    BuildStatus.FAILED: "failure",
}


class NotificationRelay(BaseModule):
    """Output module translating `BuildStatusChanged` into VCS calls."""

    name = "modules.output.notification_relay"

    def __init__(
        self,
        *,
        store: FileSystemStore,
        services: ServiceRegistry | Iterable[VcsService] | None = None,
        public_url: str = "http://localhost:8999",
    ) -> None:
        super().__init__()
        self._store = store
        if isinstance(services, ServiceRegistry):
            self._registry = services
        else:
            self._registry = ServiceRegistry(services or ())
        self._public_url = public_url
        self._input_topic = BUILD_STATUS_TOPIC
        self._subscription: Subscription | None = None
        self._sha_locks = KeyedLock()
        self._delivered_total = 0
        self._failed_total = 0

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._input_topic = options.get("input_topic", self._input_topic)
        self._public_url = options.get("public_url", self._public_url)

    async def start(self) -> None:
        if not len(self._registry):
            logger.warning("NotificationRelay has no VCS services; notifications are no-ops.")
        self._subscription = self.bus.subscribe(self._input_topic, self._handle_status)
        logger.info(
            "NotificationRelay listening on %s for services %s",
            self._input_topic,
            self._registry.keys(),
        )

    async def stop(self) -> None:
        if self._subscription:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None

    async def health(self) -> HealthStatus:
        status = "healthy" if self._failed_total == 0 else "degraded"
        return HealthStatus(
            status=status,
            details={"delivered_total": self._delivered_total, "failed_total": self._failed_total},
        )

    async def _handle_status(self, topic: str, payload: BuildStatusChanged) -> None:
        if not isinstance(payload, BuildStatusChanged):
            logger.debug("Ignoring non BuildStatusChanged payload on %s", topic)
            return
        await self.notify(payload)

    async def notify(self, event: BuildStatusChanged) -> bool:
        """
        Deliver ``event`` to every service matching the project.

        Returns False when the project declares no (known) service, which is
        not an error. Notifications for the same commit are delivered in
        publication order.
        """
        async with self._sha_locks.hold((event.project, event.sha)):
            return await self._deliver(event)

    async def _deliver(self, event: BuildStatusChanged) -> bool:
        project = await self._store.get_project_info(event.project)
        descriptor = project.service
        if descriptor is None:
            logger.debug("Project %s has no service; skipping notification", event.project)
            return False
        services = self._registry.for_descriptor(descriptor)
        if not services:
            logger.debug(
                "No registered service for %s (project %s)", descriptor.name, event.project
            )
            return False

        state = COMMIT_STATES[event.status]
        comment = None
        if event.status is BuildStatus.FAILED:
            comment = event.message or render_markdown_summary(
                public_url=self._public_url,
                project=event.project,
                build=event.build,
                diffs=event.diffs,
            )
        for service in services:
            await self._call(
                service,
                event,
                "status",
                service.set_build_status(descriptor, sha=event.sha, status=state),
            )
            if comment is not None:
                await self._call(
                    service,
                    event,
                    "comment",
                    service.add_comment(descriptor, sha=event.sha, comment=comment),
                )
        return True

    async def _call(
        self, service: VcsService, event: BuildStatusChanged, kind: str, call: Awaitable[None]
    ) -> None:
        try:
            await call
        except ExternalServiceError as exc:
            self._failed_total += 1
            logger.error(
                "Sending %s to %s for build %s failed: %s",
                kind,
                service.service_key,
                event.build,
                exc,
            )
            return
        self._delivered_total += 1


__all__ = ["COMMIT_STATES", "NotificationRelay"]
