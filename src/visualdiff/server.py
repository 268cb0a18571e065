"""
CLI entrypoint that boots the visualdiff stack.

Loads Dynaconf configuration, wires the store, differ, VCS services and event
bus into the lifecycle orchestrator, and serves the HTTP API until
interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path

from .core.bus import EventBus
from .core.config import ConfigError, ConfigService, ConfigSnapshot
from .core.orchestrator import Orchestrator
from .modules import (
    DiffOrchestrator,
    FileSystemStore,
    GithubService,
    NotificationRelay,
    PixelDiffer,
    PrometheusExporter,
    ServiceRegistry,
    VisualDiffApi,
)

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def build_services(snapshot: ConfigSnapshot) -> ServiceRegistry:
    """Instantiate every enabled VCS integration."""

    registry = ServiceRegistry()
    for settings in snapshot.enabled_services():
        if not settings.token:
            LOGGER.warning("Service %s has no token; API calls may be rejected.", settings.name)
        registry.register(
            GithubService(
                token=settings.token,
                api_url=settings.api_url,
                context=settings.context,
                timeout=settings.timeout,
            )
        )
    return registry


async def build_orchestrator(config_service: ConfigService) -> Orchestrator:
    """Create every module from ``config_service`` and register it in start order."""

    snapshot = config_service.snapshot
    bus = EventBus(
        queue_size=snapshot.bus.queue_size,
        telemetry_enabled=snapshot.bus.telemetry_enabled,
        telemetry_interval=snapshot.bus.telemetry_interval,
    )
    orchestrator = Orchestrator(bus=bus)

    store = FileSystemStore(snapshot.storage.path)
    differ = PixelDiffer(
        highlight_color=snapshot.differ.highlight_color,
        fade_alpha=snapshot.differ.fade_alpha,
    )
    services = build_services(snapshot)
    diff = DiffOrchestrator(store=store, differ=differ)

    modules = [
        diff,
        NotificationRelay(store=store, services=services),
        VisualDiffApi(store=store, orchestrator=diff, services=services),
        PrometheusExporter(),
    ]
    for module in modules:
        await orchestrator.add_module(module, config_service.module_config_for(module.name))
    return orchestrator


async def run_server(*, config_dir: Path | None, log_level: str | None = None) -> None:
    """Boot the stack and run until SIGINT/SIGTERM."""

    config_service = ConfigService(config_dir=config_dir)
    snapshot = config_service.snapshot
    configure_logging(log_level or snapshot.logging.level)
    log_file = snapshot.logging.file or snapshot.storage.path / "visualdiff.log"
    _ensure_rotating_file_handler(
        log_file,
        max_mb=snapshot.logging.max_mb,
        backup_count=snapshot.logging.backup_count,
    )

    orchestrator = await build_orchestrator(config_service)
    if snapshot.server.serve_api:
        LOGGER.info(
            "API configured at http://%s:%s (public URL %s)",
            snapshot.server.host,
            snapshot.server.port,
            snapshot.server.public_url,
        )
    if snapshot.metrics.enabled:
        LOGGER.info(
            "Prometheus metrics will be exposed on %s:%s",
            snapshot.metrics.addr,
            snapshot.metrics.port,
        )

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await orchestrator.start()
    LOGGER.info(
        "visualdiff running with %d modules. Press Ctrl+C to stop.", len(orchestrator.modules)
    )

    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="visualdiff screenshot comparison server.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: ./config).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level; overrides logging.level from config.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        asyncio.run(run_server(config_dir=args.config_dir, log_level=args.log_level))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("visualdiff server crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_orchestrator", "build_services", "main", "run_server"]
