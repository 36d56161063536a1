"""Pytest configuration and shared fixtures."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from tessera.audit import AuditLog, MemoryAuditSink
from tessera.permissions.manager import PermissionManager
from tessera.permissions.prompt import AutoPromptHandler
from tessera.permissions.store import MemoryGrantStore
from tessera.permissions.strategy import Strategy
from tessera.plugins.registry import PluginRegistry
from tessera.sandbox.runtime import SandboxConfig, SandboxRuntime
from tests import guests


@pytest.fixture
def runtime() -> Iterator[SandboxRuntime]:
    """Sandbox with default limits and a short timeout."""
    runtime = SandboxRuntime(SandboxConfig(timeout_seconds=10.0))
    yield runtime
    runtime.close()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def manager(audit_sink: MemoryAuditSink) -> PermissionManager:
    """Interactive manager whose prompts always answer 'always allow'."""
    return PermissionManager(
        Strategy.DEFAULT,
        store=MemoryGrantStore(),
        prompt=AutoPromptHandler.always_allow(),
        audit=AuditLog(audit_sink),
    )


@pytest.fixture
def registry(runtime: SandboxRuntime, manager: PermissionManager) -> PluginRegistry:
    return PluginRegistry(runtime, manager)


@pytest.fixture
def plugin_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "plugins"
    directory.mkdir()
    return directory


@pytest.fixture
def echo_wasm() -> bytes:
    return guests.echo_guest()


@pytest.fixture
def echo_path(plugin_dir: Path, echo_wasm: bytes) -> Path:
    path = plugin_dir / "echo.wasm"
    path.write_bytes(echo_wasm)
    return path
