"""
Expose build verdicts and bus telemetry via Prometheus.

The exporter counts `BuildStatusChanged` payloads per status and mirrors the
periodic `status.bus` snapshots as gauges.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import (
    BUILD_STATUS_TOPIC,
    BUS_STATUS_TOPIC,
    BaseModule,
    BuildStatusChanged,
    BusStatus,
    ModuleConfig,
)
from ...core.models import BuildStatus

logger = logging.getLogger(__name__)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class PrometheusExporter(BaseModule):
    """Status module that exports verdict counters and bus gauges over HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._status_topic = BUILD_STATUS_TOPIC
        self._bus_topic = BUS_STATUS_TOPIC
        self._port = 9093
        self._addr = "127.0.0.1"
        self._subscriptions: list[Subscription] = []
        self._builds_total = Counter(
            "visualdiff_builds_total",
            "Build status transitions by resulting status.",
            ["status"],
            registry=self._registry,
        )
        self._diffed_images_total = Counter(
            "visualdiff_diffed_images_total",
            "Images reported as different in failed builds.",
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "visualdiff_bus_queue_depth",
            "Number of events currently waiting on the bus.",
            registry=self._registry,
        )
        self._queue_capacity = Gauge(
            "visualdiff_bus_queue_capacity",
            "Maximum queue capacity.",
            registry=self._registry,
        )
        self._in_flight = Gauge(
            "visualdiff_bus_in_flight",
            "Handler tasks currently running.",
            registry=self._registry,
        )
        self._published_total = Gauge(
            "visualdiff_bus_published_total",
            "Total published events since startup.",
            registry=self._registry,
        )
        self._processed_total = Gauge(
            "visualdiff_bus_processed_total",
            "Total processed events since startup.",
            registry=self._registry,
        )
        self._failed_total = Gauge(
            "visualdiff_bus_failed_total",
            "Total handler invocations that raised.",
            registry=self._registry,
        )

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._status_topic = options.get("status_topic", self._status_topic)
        self._bus_topic = options.get("bus_topic", self._bus_topic)

    async def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        self._subscriptions = [
            self.bus.subscribe(self._status_topic, self._handle_build_status),
            self.bus.subscribe(self._bus_topic, self._handle_bus_status),
        ]

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        # Recent prometheus_client releases return a (server, thread) pair.
        server = self._server[0] if isinstance(self._server, tuple) else self._server
        shutdown = getattr(server, "shutdown", None)
        if callable(shutdown):
            shutdown()
        self._server = None

    async def _handle_build_status(self, topic: str, payload: BuildStatusChanged) -> None:
        if not isinstance(payload, BuildStatusChanged):
            return
        self._builds_total.labels(status=payload.status.value).inc()
        if payload.diffs and payload.status is BuildStatus.FAILED:
            self._diffed_images_total.inc(sum(len(images) for images in payload.diffs.values()))

    async def _handle_bus_status(self, topic: str, payload: BusStatus) -> None:
        if not isinstance(payload, BusStatus):
            return
        self._queue_depth.set(payload.queue_depth)
        self._queue_capacity.set(payload.queue_capacity)
        self._in_flight.set(payload.in_flight)
        self._published_total.set(payload.published_total)
        self._processed_total.set(payload.processed_total)
        self._failed_total.set(payload.failed_total)


__all__ = ["PrometheusExporter"]
