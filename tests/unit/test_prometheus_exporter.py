import pytest
from prometheus_client import CollectorRegistry

from visualdiff.core.bus import EventBus
from visualdiff.core.contracts import BuildStatusChanged, BusStatus, ModuleConfig
from visualdiff.core.models import BuildStatus
from visualdiff.modules.status.prometheus_exporter import PrometheusExporter


class FakeServer:
    def __init__(self) -> None:
        self.shutdown_called = False

    def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.mark.asyncio
async def test_prometheus_exporter_tracks_bus_status_and_verdicts() -> None:
    registry = CollectorRegistry()
    started = {}
    server = FakeServer()

    def factory(port: int, addr: str, _registry: CollectorRegistry) -> tuple[FakeServer, None]:
        started["port"] = port
        started["addr"] = addr
        started["registry"] = _registry
        return server, None

    bus = EventBus(telemetry_enabled=False)
    await bus.start()

    module = PrometheusExporter(registry=registry, server_factory=factory)
    module.set_bus(bus)
    await module.configure(ModuleConfig(options={"port": 9999, "addr": "127.0.0.1"}))
    await module.start()

    await bus.publish(
        "status.bus",
        BusStatus(
            queue_depth=1,
            queue_capacity=8,
            subscriber_count=2,
            in_flight=1,
            published_total=5,
            processed_total=4,
            failed_total=0,
        ),
    )
    await bus.publish(
        "build.status",
        BuildStatusChanged(
            project="p",
            build="b",
            sha="h",
            status=BuildStatus.FAILED,
            diffs={"Chrome": ["a.png", "b.png"], "Firefox": ["a.png"]},
        ),
    )
    await bus.publish(
        "build.status",
        BuildStatusChanged(project="p", build="c", sha="h", status=BuildStatus.SUCCESS),
    )
    await bus.join()

    await module.stop()
    await bus.stop()

    assert started["port"] == 9999
    assert server.shutdown_called
    assert registry.get_sample_value("visualdiff_bus_queue_depth") == 1
    assert registry.get_sample_value("visualdiff_bus_processed_total") == 4
    assert registry.get_sample_value("visualdiff_builds_total", {"status": "failed"}) == 1
    assert registry.get_sample_value("visualdiff_builds_total", {"status": "success"}) == 1
    assert registry.get_sample_value("visualdiff_diffed_images_total") == 3
