"""Tests for plugin discovery."""

from pathlib import Path

from tessera.plugins.discovery import (
    DiscoveryFailure,
    DiscoveryResult,
    PluginScanner,
    default_plugin_dirs,
    iter_module_files,
)
from tests import guests


def test_default_plugin_dirs(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_plugin_dirs() == [tmp_path / ".tessera" / "plugins", Path("plugins")]
    assert default_plugin_dirs("acme")[0] == tmp_path / ".acme" / "plugins"


def test_iter_module_files(plugin_dir: Path, tmp_path: Path):
    (plugin_dir / "b.wasm").write_bytes(b"")
    (plugin_dir / "a.wasm").write_bytes(b"")
    (plugin_dir / ".hidden.wasm").write_bytes(b"")
    (plugin_dir / "readme.md").write_text("")
    (plugin_dir / "dir.wasm").mkdir()

    found = list(iter_module_files([plugin_dir, tmp_path / "missing"]))
    assert [p.name for p in found] == ["a.wasm", "b.wasm"]
    assert all(p.is_absolute() for p in found)


def test_result_extend():
    first = DiscoveryResult(failures=[DiscoveryFailure(Path("a"), "bad")])
    first.extend(DiscoveryResult(failures=[DiscoveryFailure(Path("b"), "worse")]))
    assert [f.path for f in first.failures] == [Path("a"), Path("b")]


class TestPluginScanner:
    def test_scan_directory(self, runtime, plugin_dir, echo_path):
        (plugin_dir / "broken.wasm").write_bytes(b"garbage")
        result = PluginScanner(runtime).scan_directory(plugin_dir)
        assert [p.command_name for p in result.plugins] == ["echo"]
        assert len(result.failures) == 1
        assert "magic" in result.failures[0].error

    def test_blocked(self, runtime, plugin_dir, echo_path):
        result = PluginScanner(runtime, blocked=["echo"]).scan_directory(plugin_dir)
        assert result.plugins == []
        assert result.failures == []

    def test_scan_directories(self, runtime, plugin_dir, tmp_path, echo_path):
        other = tmp_path / "more"
        other.mkdir()
        (other / "hello.wasm").write_bytes(guests.echo_guest("hello"))
        result = PluginScanner(runtime).scan_directories([plugin_dir, other, tmp_path / "missing"])
        assert sorted(p.command_name for p in result.plugins) == ["echo", "hello"]
