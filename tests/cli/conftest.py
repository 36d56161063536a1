"""Shared fixtures for CLI tests."""

from pathlib import Path

import pytest
import yaml

from tessera.cli import app as app_module
from tessera.cli import plugin_cmd
from tessera.config.loader import load_config
from tessera.config.schema import TesseraConfig
from tests import guests


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Render CLI output at a fixed width so table cells are not folded."""
    for module in (app_module, plugin_cmd):
        monkeypatch.setattr(module.console, "width", 200)
        monkeypatch.setattr(module.err_console, "width", 200)


@pytest.fixture
def config_data(tmp_path: Path, plugin_dir: Path) -> dict:
    """Config that keeps every file the host touches inside tmp_path."""
    return {
        "sandbox": {"timeout_seconds": 10},
        "permissions": {"grants_db": str(tmp_path / "grants.db"), "audit_log": None},
        "plugins": {"dirs": [str(plugin_dir)]},
    }


@pytest.fixture
def tmp_config_path(tmp_path: Path, config_data: dict) -> Path:
    """Provide a temporary config file."""
    path = tmp_path / "tessera.yaml"
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture
def config(tmp_config_path: Path) -> TesseraConfig:
    return load_config(tmp_config_path)


@pytest.fixture
def installed(plugin_dir: Path) -> Path:
    """A plugin directory holding one plugin of every flavour."""
    plugins = {
        "echo": guests.echo_guest(),
        "fails": guests.error_guest("no such table"),
        "wild": guests.out_of_bounds_guest(),
        "env_reader": guests.echo_guest("env", env_read=("HOME",)),
    }
    for stem, wasm in plugins.items():
        (plugin_dir / f"{stem}.wasm").write_bytes(wasm)
    return plugin_dir
