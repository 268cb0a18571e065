from __future__ import annotations

import io
import tarfile
import textwrap
from collections.abc import Callable, Mapping
from pathlib import Path

import imageio.v3 as iio
import numpy as np
import pytest

from visualdiff.core.config import ConfigService
from visualdiff.modules.storage.filesystem import FileSystemStore

PngFactory = Callable[..., bytes]
ArchiveFactory = Callable[..., Path]


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    data_dir = tmp_path / "data"
    config_yaml = f"""
    server:
      host: "127.0.0.1"
      port: 9100
      serve_api: false
      public_url: "https://diff.example.test/"

    storage:
      path: "{data_dir.as_posix()}"

    differ:
      threshold: 0.5
      highlight_color: [255, 0, 0]
      fade_alpha: 0.25

    bus:
      queue_size: 32
      telemetry_enabled: false

    services:
      - name: "github"
        api_url: "https://github.example.test/api/v3"
        context: "CI - Screens"
      - name: "github"
        enabled: false

    metrics:
      enabled: true
      port: 9200

    logging:
      level: "debug"
    """
    secrets_yaml = """
    secrets:
      github:
        token: "ghp_example"
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "secrets.yaml", secrets_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)


@pytest.fixture
def store(tmp_path: Path) -> FileSystemStore:
    return FileSystemStore(tmp_path / "data")


@pytest.fixture
def make_png() -> PngFactory:
    """Encode a solid RGB image, optionally with individual pixels recoloured."""

    def _make(
        color: tuple[int, int, int] = (10, 20, 30),
        *,
        size: tuple[int, int] = (4, 4),
        pixels: Mapping[tuple[int, int], tuple[int, int, int]] | None = None,
    ) -> bytes:
        width, height = size
        image = np.zeros((height, width, 3), dtype=np.uint8)
        image[:, :] = color
        for (x, y), value in (pixels or {}).items():
            image[y, x] = value
        return iio.imwrite("<bytes>", image, extension=".png")

    return _make


@pytest.fixture
def make_archive(tmp_path: Path) -> ArchiveFactory:
    """Write a tarball holding ``files``, optionally nested under a wrapper directory."""

    counter = iter(range(1_000_000))

    def _make(
        files: Mapping[str, bytes],
        *,
        wrapper: str | None = None,
        compression: str = "",
    ) -> Path:
        suffix = ".tar.gz" if compression == "gz" else ".tar"
        path = tmp_path / f"upload-{next(counter)}{suffix}"
        mode = f"w:{compression}" if compression else "w"
        with tarfile.open(path, mode) as tar:
            for name, data in files.items():
                member = tarfile.TarInfo(f"{wrapper}/{name}" if wrapper else name)
                member.size = len(data)
                tar.addfile(member, io.BytesIO(data))
        return path

    return _make
