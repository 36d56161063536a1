"""Tests for CLI plugin commands."""

from tessera.cli.plugin_cmd import (
    build_host,
    info_command,
    list_commands,
    list_grants,
    revoke_grants,
    run_command,
    trust_subject,
)
from tessera.permissions.strategy import Strategy
from tessera.permissions.trust import TrustDirectives
from tests import guests


def write_plugin(directory, stem, wasm):
    path = directory / f"{stem}.wasm"
    path.write_bytes(wasm)
    return path


def test_build_host_from_config(config):
    """Test the host is wired from the config sections."""
    config.plugins.reserved_names = ["help"]
    host = build_host(config)
    try:
        assert host.permissions.strategy is Strategy.DEFAULT
        assert host.registry.reserved_names == frozenset({"help"})
        assert host.runtime.config.timeout_seconds == 10
        assert host.permissions.persist_decisions
    finally:
        host.close()


def test_build_host_applies_directives(config):
    """Test trust directives become session grants."""
    directives = TrustDirectives(trusted_plugins=["env_reader"], trust_session=True)
    host = build_host(config, directives)
    try:
        assert not host.permissions.persist_decisions
        assert [str(g.subject) for g in host.permissions.store.list()] == ["plugin:env_reader"]
    finally:
        host.close()


async def test_host_load_skips_blocked(config, installed):
    """Test blocked plugin ids are never loaded."""
    config.plugins.blocked = ["echo"]
    host = build_host(config)
    try:
        result = await host.load()
        assert "echo" not in host.registry
        assert host.registry.has_command("fails")
        assert any(f.path.name == "env_reader.wasm" for f in result.failures)
    finally:
        host.close()


def test_list_commands_reports_skipped(config, installed, capsys):
    """Test listing shows loaded commands and skipped files."""
    write_plugin(installed, "broken", b"garbage")
    assert list_commands(config) == 0
    captured = capsys.readouterr()
    assert "echo" in captured.out
    assert "Skipped broken.wasm" in captured.err


def test_list_commands_empty(config, capsys):
    """Test listing with no plugins installed."""
    assert list_commands(config) == 0
    assert "No plugins loaded." in capsys.readouterr().out


def test_info_shows_capabilities(config, plugin_dir, capsys):
    """Test info lists declared capabilities."""
    write_plugin(plugin_dir, "reader", guests.echo_guest("reader", env_read=("HOME",)))
    trust_subject(config, "reader", persistent=True)
    capsys.readouterr()

    assert info_command(config, "reader") == 0
    out = capsys.readouterr().out
    assert "Plugin: reader" in out
    assert "env_read:HOME" in out


def test_info_unknown(config, capsys):
    assert info_command(config, "nope") == 1
    assert "not found" in capsys.readouterr().err


def test_run_command_exit_codes(config, installed, capsys):
    """Test results map to exit codes."""
    assert run_command(config, "echo", ["World"]) == 0
    assert "Echo: World" in capsys.readouterr().out
    assert run_command(config, "fails", []) == 1
    assert run_command(config, "wild", []) == 101
    assert run_command(config, "missing", []) == 1


def test_run_command_with_trust(config, installed, capsys):
    """Test a trust directive lets a denied plugin run."""
    assert run_command(config, "env", ["x"]) == 1
    directives = TrustDirectives(trusted_commands=["env"])
    assert run_command(config, "env", ["x"], directives) == 0
    assert "Echo: x" in capsys.readouterr().out


def test_trust_and_revoke(config, capsys):
    """Test persistent trust is listed and can be revoked."""
    assert trust_subject(config, "db", command=True, persistent=True) == 0
    assert list_grants(config) == 0
    assert "command:db" in capsys.readouterr().out

    assert revoke_grants(config, "command:db") == 0
    assert "Revoked 1" in capsys.readouterr().out
    assert list_grants(config, "command:db") == 0
    assert "No stored decisions." in capsys.readouterr().out
