"""
Dynaconf-powered configuration loader with Pydantic validation.

Layered YAML files (``config.yaml`` then ``secrets.yaml``) plus
``VISUALDIFF_``-prefixed environment variables are merged, validated into a
`ConfigSnapshot`, and turned into per-module `ModuleConfig` objects so the
entrypoint can wire modules without hand-written dictionaries.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .contracts import BUILD_STATUS_TOPIC, BUS_STATUS_TOPIC, IMAGES_CHANGED_TOPIC, ModuleConfig


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _section_list(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    """List-aware helper for case-insensitive lookups."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _lower_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Dynaconf upper-cases top-level keys; nested sections keep their case."""
    return {str(key).lower(): value for key, value in data.items()}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
DEFAULT_CONFIG_DIR = Path.cwd() / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class ServerSettings(BaseModel):
    """HTTP API binding and the public URL used in notification links."""

    model_config = ConfigDict(extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8999, ge=1, le=65535)
    serve_api: bool = Field(default=True)
    public_url: str = Field(default="http://localhost:8999")

    @field_validator("public_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class StorageSettings(BaseModel):
    """Root directory of the hierarchical store."""

    model_config = ConfigDict(extra="ignore")

    path: Path = Field(default_factory=lambda: Path("data"))

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value
        return Path(value)

    def ensure_directories(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)


class DifferSettings(BaseModel):
    """Pixel comparison policy."""

    model_config = ConfigDict(extra="ignore")

    threshold: float = Field(
        default=0.0,
        ge=0.0,
        le=100.0,
        description="Mismatch percentage above which two images count as different.",
    )
    highlight_color: tuple[int, int, int] = Field(default=(255, 0, 255))
    fade_alpha: float = Field(default=0.3, ge=0.0, le=1.0)


class BusSettings(BaseModel):
    """Event bus sizing and telemetry cadence."""

    model_config = ConfigDict(extra="ignore")

    queue_size: int = Field(default=256, gt=0)
    telemetry_enabled: bool = Field(default=True)
    telemetry_interval: float = Field(default=5.0, gt=0.0)


class ServiceSettings(BaseModel):
    """Credentials and endpoint for one external VCS integration."""

    model_config = ConfigDict(extra="ignore")

    name: Literal["github"] = Field(default="github")
    enabled: bool = Field(default=True)
    token: str | None = Field(default=None)
    api_url: str = Field(default="https://api.github.com")
    context: str = Field(default="CI - Visual")
    timeout: float = Field(default=15.0, gt=0.0)


class MetricsSettings(BaseModel):
    """Prometheus exporter binding."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, ge=1, le=65535)


class LoggingSettings(BaseModel):
    """Root logger level and rotating log file."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None)
    max_mb: int = Field(default=10, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


class ConfigSnapshot(BaseModel):
    """Validated, immutable view of the merged configuration."""

    model_config = ConfigDict(extra="ignore")

    server: ServerSettings = Field(default_factory=ServerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    differ: DifferSettings = Field(default_factory=DifferSettings)
    bus: BusSettings = Field(default_factory=BusSettings)
    services: list[ServiceSettings] = Field(default_factory=list)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def enabled_services(self) -> list[ServiceSettings]:
        return [service for service in self.services if service.enabled]

    def module_config(self, module_name: str) -> ModuleConfig:
        """Return the `ModuleConfig` for a registered module name."""
        try:
            builder = _MODULE_BUILDERS[module_name]
        except KeyError as exc:
            raise KeyError(f"No configuration builder for module {module_name}") from exc
        return builder(self)


def _diff_orchestrator_config(snapshot: ConfigSnapshot) -> ModuleConfig:
    return ModuleConfig(
        options={
            "input_topic": IMAGES_CHANGED_TOPIC,
            "output_topic": BUILD_STATUS_TOPIC,
            "threshold": snapshot.differ.threshold,
            "public_url": snapshot.server.public_url,
        }
    )


def _notification_relay_config(snapshot: ConfigSnapshot) -> ModuleConfig:
    return ModuleConfig(
        options={"input_topic": BUILD_STATUS_TOPIC, "public_url": snapshot.server.public_url}
    )


def _api_config(snapshot: ConfigSnapshot) -> ModuleConfig:
    return ModuleConfig(
        options={
            "host": snapshot.server.host,
            "port": snapshot.server.port,
            "serve_api": snapshot.server.serve_api,
            "images_topic": IMAGES_CHANGED_TOPIC,
            "status_topic": BUILD_STATUS_TOPIC,
        }
    )


def _metrics_config(snapshot: ConfigSnapshot) -> ModuleConfig:
    return ModuleConfig(
        enabled=snapshot.metrics.enabled,
        options={
            "addr": snapshot.metrics.addr,
            "port": snapshot.metrics.port,
            "status_topic": BUILD_STATUS_TOPIC,
            "bus_topic": BUS_STATUS_TOPIC,
        },
    )


_MODULE_BUILDERS: dict[str, Callable[[ConfigSnapshot], ModuleConfig]] = {
    "modules.diff.orchestrator": _diff_orchestrator_config,
    "modules.output.notification_relay": _notification_relay_config,
    "modules.dashboard.api": _api_config,
    "modules.status.prometheus_exporter": _metrics_config,
}


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="VISUALDIFF",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
        )
        self._snapshot = self._build_snapshot()
        self._snapshot.storage.ensure_directories()

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        self._snapshot.storage.ensure_directories()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """Merge ``changes`` into the current configuration without persisting them."""
        raw = _lower_keys(self._settings.as_dict())
        merged = _deep_merge(raw, changes)
        self._snapshot = self._build_snapshot(merged)
        self._snapshot.storage.ensure_directories()
        return self._snapshot

    def module_config_for(self, module_name: str) -> ModuleConfig:
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        data = self._extract_snapshot_data(raw or _lower_keys(self._settings.as_dict()))
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError("Configuration validation failed") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        # Secrets may carry service tokens keyed by service name.
        secrets = _section(raw, "secrets")
        services = []
        for service in _section_list(raw, "services"):
            token = _section(secrets, str(service.get("name", "github"))).get("token")
            if token and not service.get("token"):
                service = {**service, "token": token}
            services.append(service)
        return {
            "server": _section(raw, "server"),
            "storage": _section(raw, "storage"),
            "differ": _section(raw, "differ"),
            "bus": _section(raw, "bus"),
            "services": services,
            "metrics": _section(raw, "metrics"),
            "logging": _section(raw, "logging"),
        }


__all__ = [
    "BusSettings",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DifferSettings",
    "LoggingSettings",
    "MetricsSettings",
    "ServerSettings",
    "ServiceSettings",
    "StorageSettings",
]
