"""Tests for the Dynaconf-backed configuration service."""

from __future__ import annotations

from pathlib import Path

import pytest

from visualdiff.core.config import ConfigError, ConfigService, ConfigSnapshot
from visualdiff.core.contracts import BUILD_STATUS_TOPIC, IMAGES_CHANGED_TOPIC


def test_config_service_loads_snapshot(sample_config_service: ConfigService) -> None:
    snapshot = sample_config_service.snapshot
    assert isinstance(snapshot, ConfigSnapshot)
    assert snapshot.server.port == 9100
    assert snapshot.server.public_url == "https://diff.example.test"
    assert snapshot.storage.path.exists()
    assert snapshot.differ.threshold == 0.5
    assert snapshot.differ.highlight_color == (255, 0, 0)
    assert snapshot.bus.telemetry_enabled is False
    assert snapshot.logging.level == "DEBUG"


def test_service_tokens_come_from_secrets(sample_config_service: ConfigService) -> None:
    services = sample_config_service.snapshot.enabled_services()
    assert len(services) == 1
    assert services[0].token == "ghp_example"
    assert services[0].api_url == "https://github.example.test/api/v3"
    assert services[0].context == "CI - Screens"


def test_module_config_generation(sample_config_service: ConfigService) -> None:
    diff_cfg = sample_config_service.module_config_for("modules.diff.orchestrator")
    assert diff_cfg.options["threshold"] == 0.5
    assert diff_cfg.options["input_topic"] == IMAGES_CHANGED_TOPIC
    assert diff_cfg.options["public_url"] == "https://diff.example.test"

    relay_cfg = sample_config_service.module_config_for("modules.output.notification_relay")
    assert relay_cfg.options["input_topic"] == BUILD_STATUS_TOPIC
    assert relay_cfg.options["public_url"] == "https://diff.example.test"

    api_cfg = sample_config_service.module_config_for("modules.dashboard.api")
    assert api_cfg.options["serve_api"] is False
    assert api_cfg.options["port"] == 9100

    metrics_cfg = sample_config_service.module_config_for("modules.status.prometheus_exporter")
    assert metrics_cfg.enabled is True
    assert metrics_cfg.options["port"] == 9200


def test_unknown_module_raises_error(sample_config_service: ConfigService) -> None:
    with pytest.raises(KeyError):
        sample_config_service.module_config_for("modules.unknown")


def test_apply_changes_merges_without_persisting(sample_config_service: ConfigService) -> None:
    snapshot = sample_config_service.apply_changes({"differ": {"threshold": 2.5}})
    assert snapshot.differ.threshold == 2.5
    assert snapshot.differ.fade_alpha == 0.25
    assert sample_config_service.module_config_for("modules.diff.orchestrator").options[
        "threshold"
    ] == 2.5


def test_invalid_values_raise_config_error(sample_config_service: ConfigService) -> None:
    with pytest.raises(ConfigError):
        sample_config_service.apply_changes({"differ": {"threshold": -1}})


def test_missing_config_directory_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        ConfigService(config_dir=tmp_path / "missing")


def test_defaults_apply_for_minimal_config(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    data_dir = tmp_path / "store"
    (config_dir / "config.yaml").write_text(
        f'storage:\n  path: "{data_dir.as_posix()}"\n', encoding="utf-8"
    )

    snapshot = ConfigService(config_dir=config_dir).snapshot

    assert snapshot.server.port == 8999
    assert snapshot.differ.threshold == 0.0
    assert snapshot.services == []
    assert snapshot.metrics.enabled is False
    assert data_dir.is_dir()
