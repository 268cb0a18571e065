"""
Lifecycle coordinator for visualdiff modules.

The orchestrator owns the shared event bus, configures modules, starts them
in registration order, stops them in reverse order, and aggregates their
health reports.
"""

from __future__ import annotations

import logging

from .bus import EventBus
from .contracts import BaseModule, HealthStatus, ModuleConfig

logger = logging.getLogger(__name__)


class Orchestrator:
    """Manage module lifecycle and shared infrastructure."""

    def __init__(self, *, bus: EventBus | None = None) -> None:
        self.bus = bus or EventBus()
        self._modules: list[BaseModule] = []
        self._configs: dict[BaseModule, ModuleConfig] = {}
        self._started: list[BaseModule] = []
        self._running = False

    @property
    def modules(self) -> list[BaseModule]:
        return list(self._modules)

    @property
    def running(self) -> bool:
        return self._running

    async def add_module(self, module: BaseModule, config: ModuleConfig | None = None) -> None:
        """
        Register a module with an optional configuration.

        Modules receive the shared bus before configuration. Disabled modules
        are configured but never started.
        """
        module.set_bus(self.bus)
        if config is None:
            config = ModuleConfig()
        await module.configure(config)
        self._modules.append(module)
        self._configs[module] = config
        logger.info("Registered module %s", module.name)

    async def start(self) -> None:
        """Start the bus and all enabled modules."""
        if self._running:
            logger.warning("Orchestrator already running.")
            return
        await self.bus.start()
        for module in self._modules:
            if not self._configs[module].enabled:
                logger.info("Module %s disabled; not starting.", module.name)
                continue
            logger.info("Starting module %s", module.name)
            await module.start()
            self._started.append(module)
        self._running = True
        logger.info("Orchestrator started %d modules.", len(self._started))

    async def stop(self) -> None:
        """Stop started modules in reverse order, then shut down the bus."""
        if not self._running:
            logger.warning("Orchestrator stop requested while not running.")
            return
        for module in reversed(self._started):
            try:
                await module.stop()
            except Exception:
                logger.exception("Module %s failed to stop cleanly.", module.name)
        self._started.clear()
        await self.bus.stop()
        self._running = False
        logger.info("Orchestrator stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Aggregate health information from all modules."""
        reports: dict[str, HealthStatus] = {}
        for module in self._modules:
            reports[module.name] = await module.health()
        return reports

    @staticmethod
    def overall_status(reports: dict[str, HealthStatus]) -> str:
        statuses = {report.status for report in reports.values()}
        if "error" in statuses:
            return "error"
        if "degraded" in statuses:
            return "degraded"
        return "healthy"


__all__ = ["Orchestrator"]
