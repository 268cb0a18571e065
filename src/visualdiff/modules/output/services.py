"""
External VCS service abstraction.

Each concrete integration declares a ``service_key``; a project selects its
integration through ``project.service.name``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from ...core.models import ServiceDescriptor

logger = logging.getLogger(__name__)


@runtime_checkable
class VcsService(Protocol):
    """Capability set every VCS integration provides."""

    service_key: str

    async def set_build_status(
        self, service: ServiceDescriptor, *, sha: str, status: str
    ) -> None: ...

    async def add_comment(self, service: ServiceDescriptor, *, sha: str, comment: str) -> None: ...


class ServiceRegistry:
    """Lookup of configured services by their key."""

    def __init__(self, services: Iterable[VcsService] = ()) -> None:
        self._services: list[VcsService] = []
        for service in services:
            self.register(service)

    def register(self, service: VcsService) -> None:
        if not isinstance(service, VcsService):
            raise TypeError(f"{service!r} does not implement the VcsService protocol")
        self._services.append(service)
        logger.debug("Registered VCS service %s", service.service_key)

    def keys(self) -> list[str]:
        return sorted({service.service_key for service in self._services})

    def supports(self, name: str) -> bool:
        return any(service.service_key == name for service in self._services)

    def for_descriptor(self, descriptor: ServiceDescriptor) -> list[VcsService]:
        return [service for service in self._services if service.service_key == descriptor.name]

    def __len__(self) -> int:
        return len(self._services)


__all__ = ["ServiceRegistry", "VcsService"]
