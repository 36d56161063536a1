"""Tests for mapping granted capabilities onto WASI."""

from pathlib import Path
from unittest.mock import patch

import pytest
import wasmtime

from tessera.errors import InvalidEnvPattern, SandboxEscape, WasiError
from tessera.protocol.manifest import CapabilityKind, CapabilityRequest
from tessera.sandbox.wasi import (
    SandboxValidator,
    WasiSpec,
    build_wasi_spec,
    expand_env_pattern,
    guest_path_for,
    validate_env_pattern,
)


def fs_read(pattern: str) -> CapabilityRequest:
    return CapabilityRequest(CapabilityKind.FS_READ, pattern)


def fs_write(pattern: str) -> CapabilityRequest:
    return CapabilityRequest(CapabilityKind.FS_WRITE, pattern)


def env(pattern: str) -> CapabilityRequest:
    return CapabilityRequest(CapabilityKind.ENV_READ, pattern)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    (tmp_path / "data").mkdir()
    (tmp_path / "out").mkdir()
    (tmp_path / "notes.txt").write_text("hi")
    return tmp_path


@pytest.fixture
def validator(workdir: Path) -> SandboxValidator:
    return SandboxValidator(working_directory=workdir)


class TestGuestPaths:
    @pytest.mark.parametrize(
        "pattern,expected",
        [
            ("./data", "/data"),
            ("~/data", "/data"),
            ("data/", "/data"),
            ("/var/lib/app/", "/var/lib/app"),
            (".", "/"),
            ("/", "/"),
        ],
    )
    def test_guest_path_for(self, pattern, expected):
        assert guest_path_for(pattern) == expected


class TestEnvPatterns:
    @pytest.mark.parametrize("pattern", ["HOME", "DB_*", "X1"])
    def test_valid(self, pattern):
        validate_env_pattern(pattern)

    @pytest.mark.parametrize("pattern", ["", "*", "A*B", "A**", "PATH=x", "with space"])
    def test_invalid(self, pattern):
        with pytest.raises(InvalidEnvPattern):
            validate_env_pattern(pattern)

    def test_expand_exact(self):
        environ = {"HOME": "/home/u", "HOMER": "simpson"}
        assert expand_env_pattern("HOME", environ) == [("HOME", "/home/u")]
        assert expand_env_pattern("MISSING", environ) == []

    def test_expand_prefix(self):
        environ = {"DB_URL": "x", "DB_HOST": "y", "DBX": "z"}
        assert expand_env_pattern("DB_*", environ) == [("DB_HOST", "y"), ("DB_URL", "x")]


class TestSandboxValidator:
    def test_relative_path_resolves_under_workdir(self, validator, workdir):
        assert validator.resolve_path("./data") == (workdir / "data").resolve()

    def test_relative_escape_is_rejected(self, validator):
        with pytest.raises(SandboxEscape):
            validator.resolve_path("../elsewhere")

    def test_symlink_escape_is_rejected(self, validator, workdir, tmp_path_factory):
        outside = tmp_path_factory.mktemp("outside")
        (workdir / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(SandboxEscape):
            validator.resolve_path("./link")

    def test_absolute_paths_are_allowed(self, validator, tmp_path_factory):
        outside = tmp_path_factory.mktemp("abs")
        assert validator.resolve_path(str(outside)) == outside.resolve()

    def test_file_is_not_a_directory(self, validator):
        with pytest.raises(WasiError, match="not a directory"):
            validator.resolve_path("./notes.txt")

    def test_missing_path(self, workdir):
        lenient = SandboxValidator(working_directory=workdir)
        assert lenient.resolve_path("./missing") == workdir.resolve() / "missing"
        strict = SandboxValidator(working_directory=workdir, require_existence=True)
        with pytest.raises(WasiError, match="does not exist"):
            strict.resolve_path("./missing")

    def test_check(self, validator):
        validator.check([fs_read("./data"), env("HOME"), CapabilityRequest(CapabilityKind.STDOUT)])
        with pytest.raises(InvalidEnvPattern):
            validator.check([env("*")])
        with pytest.raises(SandboxEscape):
            validator.check([fs_write("../x")])


class TestBuildWasiSpec:
    def test_nothing_granted(self, validator):
        spec = build_wasi_spec([], ["echo", "World"], validator, environ={"HOME": "/h"})
        assert spec.argv == ["echo", "World"]
        assert spec.preopens == []
        assert spec.env == []
        assert not (spec.stdin or spec.stdout or spec.stderr)
        assert spec.permission_summary() == "no host access"

    def test_preopens(self, validator, workdir):
        spec = build_wasi_spec([fs_read("./data"), fs_write("./out")], ["x"], validator)
        mounts = {p.guest_path: (p.host_path, p.writable) for p in spec.preopens}
        assert mounts == {
            "/data": ((workdir / "data").resolve(), False),
            "/out": ((workdir / "out").resolve(), True),
        }

    def test_write_upgrades_read(self, validator):
        spec = build_wasi_spec([fs_read("./data"), fs_write("data")], ["x"], validator)
        assert len(spec.preopens) == 1
        assert spec.preopens[0].writable

    def test_missing_path_is_skipped(self, validator):
        spec = build_wasi_spec([fs_read("./missing")], ["x"], validator)
        assert spec.preopens == []
        assert any("missing" in warning for warning in spec.warnings)

    def test_env_only_granted_variables(self, validator):
        environ = {"HOME": "/home/u", "SECRET": "s", "APP_A": "1", "APP_B": "2"}
        spec = build_wasi_spec([env("HOME"), env("APP_*")], ["x"], validator, environ=environ)
        assert spec.env == [("APP_A", "1"), ("APP_B", "2"), ("HOME", "/home/u")]

    def test_unset_env_warns(self, validator):
        spec = build_wasi_spec([env("NOPE")], ["x"], validator, environ={})
        assert spec.env == []
        assert spec.warnings

    def test_stdio_and_net(self, validator):
        granted = [
            CapabilityRequest(CapabilityKind.STDOUT),
            CapabilityRequest(CapabilityKind.STDERR),
            CapabilityRequest(CapabilityKind.NET),
        ]
        spec = build_wasi_spec(granted, ["x"], validator)
        assert spec.stdout and spec.stderr and not spec.stdin
        assert any("network" in warning for warning in spec.warnings)
        assert "stdio: stdout, stderr" in spec.permission_summary()

    def test_to_wasi_config(self, validator):
        spec = build_wasi_spec([fs_read("./data"), env("HOME")], ["x"], validator, environ={"HOME": "/h"})
        assert spec.to_wasi_config() is not None
        assert WasiSpec(argv=["x"]).to_wasi_config() is not None

    def test_preopens_carry_write_access(self, validator):
        spec = build_wasi_spec([fs_read("./data"), fs_write("./out")], ["x"], validator)
        with patch.object(wasmtime.WasiConfig, "preopen_dir") as preopen_dir:
            spec.to_wasi_config()
        calls = {call.args[1]: call.args[2] for call in preopen_dir.call_args_list}
        assert calls == {
            "/data": False,
            "/out": True,
        }
