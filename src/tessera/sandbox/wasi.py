"""Map granted capabilities onto a WASI context.

Only capabilities that cleared the permission system ever reach this module.
Filesystem grants become preopened directories, ``env_read`` grants become
environment variables and stdio grants inherit the host's streams. Anything
not granted is simply absent from the guest's world.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import wasmtime

from tessera.errors import InvalidEnvPattern, SandboxEscape, WasiError
from tessera.protocol.manifest import CapabilityKind, CapabilityRequest

logger = logging.getLogger(__name__)

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+\*?$")


def guest_path_for(pattern: str) -> str:
    """Derive the path a directory is mounted at inside the guest.

    ``./data`` and ``~/data`` both mount at ``/data``; absolute patterns keep
    their path and bare names are rooted at ``/``.
    """
    if pattern.startswith("./"):
        stripped = pattern[2:]
    elif pattern.startswith("~/"):
        stripped = pattern[2:]
    elif pattern in (".", "~"):
        stripped = ""
    elif pattern.startswith("/"):
        return pattern.rstrip("/") or "/"
    else:
        stripped = pattern
    return "/" + stripped.strip("/")


def validate_env_pattern(pattern: str) -> None:
    """Reject env patterns that are empty, malformed or match everything.

    Raises:
        InvalidEnvPattern: If the pattern is not a name or ``PREFIX*`` glob
    """
    if not pattern:
        raise InvalidEnvPattern(pattern, "pattern is empty")
    if pattern == "*":
        raise InvalidEnvPattern(pattern, "a bare '*' would expose the whole environment")
    if pattern.count("*") > 1 or ("*" in pattern and not pattern.endswith("*")):
        raise InvalidEnvPattern(pattern, "'*' is only allowed once, at the end")
    if not ENV_NAME_PATTERN.match(pattern):
        raise InvalidEnvPattern(pattern, "only letters, digits, '_' and a trailing '*' are allowed")


def expand_env_pattern(
    pattern: str, environ: Mapping[str, str] | None = None
) -> list[tuple[str, str]]:
    """Resolve an env pattern against the host environment.

    Args:
        pattern: Variable name or ``PREFIX*`` glob
        environ: Environment to read (defaults to ``os.environ``)

    Returns:
        Sorted ``(name, value)`` pairs. A missing variable yields nothing.
    """
    validate_env_pattern(pattern)
    environ = os.environ if environ is None else environ
    if pattern.endswith("*"):
        prefix = pattern[:-1]
        return sorted((name, value) for name, value in environ.items() if name.startswith(prefix))
    value = environ.get(pattern)
    return [(pattern, value)] if value is not None else []


class SandboxValidator:
    """Resolve and check path patterns before they are preopened."""

    def __init__(
        self,
        working_directory: Path | str | None = None,
        follow_symlinks: bool = True,
        require_existence: bool = False,
    ):
        self.working_directory = Path(working_directory or Path.cwd()).resolve()
        self.follow_symlinks = follow_symlinks
        self.require_existence = require_existence

    def resolve_path(self, pattern: str) -> Path:
        """Turn a declared pattern into an absolute host path.

        ``~`` is expanded and relative patterns are resolved against the
        working directory, which they must not escape.

        Raises:
            SandboxEscape: If a relative pattern leaves the working directory
            WasiError: If the path is required but missing, or not a directory
        """
        expanded = Path(pattern).expanduser()
        absolute = expanded if expanded.is_absolute() else self.working_directory / expanded
        if self.follow_symlinks:
            resolved = absolute.resolve()
        else:
            resolved = Path(os.path.normpath(absolute))

        is_relative = not (pattern.startswith("/") or pattern.startswith("~"))
        if is_relative and not resolved.is_relative_to(self.working_directory):
            raise SandboxEscape(pattern, resolved, self.working_directory)

        if resolved.exists():
            if not resolved.is_dir():
                raise WasiError(f"path '{pattern}' ({resolved}) is not a directory")
        elif self.require_existence:
            raise WasiError(f"path '{pattern}' ({resolved}) does not exist")
        return resolved

    def check(self, requests: Iterable[CapabilityRequest]) -> None:
        """Validate every filesystem and env request without building anything."""
        for request in requests:
            if request.kind in (CapabilityKind.FS_READ, CapabilityKind.FS_WRITE):
                self.resolve_path(request.pattern)
            elif request.kind is CapabilityKind.ENV_READ:
                validate_env_pattern(request.pattern)


@dataclass
class Preopen:
    host_path: Path
    guest_path: str
    writable: bool = False


@dataclass
class WasiSpec:
    """Everything the guest's WASI context will contain."""

    argv: list[str] = field(default_factory=list)
    preopens: list[Preopen] = field(default_factory=list)
    env: list[tuple[str, str]] = field(default_factory=list)
    stdin: bool = False
    stdout: bool = False
    stderr: bool = False
    warnings: list[str] = field(default_factory=list)

    def permission_summary(self) -> str:
        """One line per granted resource, for operators."""
        lines = []
        for preopen in self.preopens:
            mode = "read-write" if preopen.writable else "read-only"
            lines.append(f"{mode}: {preopen.host_path} -> {preopen.guest_path}")
        if self.env:
            lines.append("env: " + ", ".join(name for name, _ in self.env))
        streams = [name for name in ("stdin", "stdout", "stderr") if getattr(self, name)]
        if streams:
            lines.append("stdio: " + ", ".join(streams))
        return "\n".join(lines) if lines else "no host access"

    def to_wasi_config(self) -> wasmtime.WasiConfig:
        config = wasmtime.WasiConfig()
        config.argv = self.argv
        if self.env:
            config.env = self.env
        if self.stdin:
            config.inherit_stdin()
        if self.stdout:
            config.inherit_stdout()
        if self.stderr:
            config.inherit_stderr()
        for preopen in self.preopens:
            config.preopen_dir(str(preopen.host_path), preopen.guest_path, preopen.writable)
        return config


def build_wasi_spec(
    granted: Iterable[CapabilityRequest],
    argv: list[str],
    validator: SandboxValidator,
    environ: Mapping[str, str] | None = None,
) -> WasiSpec:
    """Build the WASI context description for one execution.

    Args:
        granted: Capabilities the permission system allowed
        argv: Program name followed by the invocation arguments
        validator: Path resolver bound to the host's working directory
        environ: Environment to read variables from

    Returns:
        The WASI setup; missing paths and variables are skipped with a warning

    Raises:
        SandboxEscape: If a relative path leaves the working directory
        InvalidEnvPattern: If an env pattern is malformed
    """
    spec = WasiSpec(argv=list(argv))
    by_host: dict[Path, Preopen] = {}
    env: dict[str, str] = {}

    for request in granted:
        kind = request.kind
        if kind in (CapabilityKind.FS_READ, CapabilityKind.FS_WRITE):
            host_path = validator.resolve_path(request.pattern)
            if not host_path.exists():
                spec.warnings.append(f"skipping missing path {host_path}")
                continue
            writable = kind is CapabilityKind.FS_WRITE
            existing = by_host.get(host_path)
            if existing is not None:
                existing.writable = existing.writable or writable
                continue
            guest_path = guest_path_for(request.pattern)
            if any(p.guest_path == guest_path for p in by_host.values()):
                spec.warnings.append(f"guest path {guest_path} already mounted, skipping {host_path}")
                continue
            by_host[host_path] = Preopen(host_path, guest_path, writable)
        elif kind is CapabilityKind.ENV_READ:
            pairs = expand_env_pattern(request.pattern, environ)
            if not pairs:
                spec.warnings.append(f"environment variable {request.pattern} is not set")
            env.update(pairs)
        elif kind is CapabilityKind.STDIN:
            spec.stdin = True
        elif kind is CapabilityKind.STDOUT:
            spec.stdout = True
        elif kind is CapabilityKind.STDERR:
            spec.stderr = True
        elif kind is CapabilityKind.NET:
            spec.warnings.append("network access is not supported by the sandbox")

    spec.preopens = list(by_host.values())
    spec.env = sorted(env.items())
    for warning in spec.warnings:
        logger.debug(f"WASI: {warning}")
    return spec
