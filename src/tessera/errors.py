"""Error taxonomy shared by the plugin host.

A broken plugin raises :class:`LoadError`, an untrusted one
:class:`CapabilityDenied`. A misbehaving guest surfaces as
:class:`SandboxFault` or :class:`ProtocolError`. A plugin's own reported
failure is not an exception at all but an ``ExecuteResult`` with
``success=False``.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Iterable


class TesseraError(Exception):
    """Base class for all plugin host errors."""


class LoadError(TesseraError):
    """A module could not be loaded (malformed, incompatible or colliding)."""

    def __init__(self, reason: str, path: Path | str | None = None):
        self.reason = reason
        self.path = Path(path) if path is not None else None
        message = f"{self.path}: {reason}" if self.path else reason
        super().__init__(message)

    def with_path(self, path: Path | str) -> LoadError:
        """Attach the source path if the error was raised without one."""
        if self.path is None:
            self.path = Path(path)
            self.args = (f"{self.path}: {self.reason}",)
        return self


class ApiVersionMismatch(LoadError):
    """The guest declared a manifest ``api_version`` the host does not speak."""

    def __init__(self, actual: int, supported: Iterable[int], path: Path | str | None = None):
        self.actual = actual
        self.supported = tuple(sorted(supported))
        self.expected = max(self.supported)
        super().__init__(
            f"unsupported api_version {actual} (host supports {', '.join(map(str, self.supported))})",
            path,
        )


class CommandCollision(LoadError):
    """The command name is already taken by a built-in or another plugin."""

    def __init__(self, name: str, owner: str, path: Path | str | None = None):
        self.name = name
        self.owner = owner
        super().__init__(f"command '{name}' is already provided by {owner}", path)


class CapabilityDenied(TesseraError):
    """One or more declared capabilities were not granted."""

    def __init__(self, subject: str, denied: Iterable[object]):
        self.subject = subject
        self.denied = tuple(denied)
        listed = ", ".join(str(item) for item in self.denied) or "unknown"
        super().__init__(f"{subject}: capabilities denied: {listed}")


class FaultKind(StrEnum):
    """Why a guest execution was aborted."""

    FUEL = "fuel"
    STACK = "stack"
    TIMEOUT = "timeout"
    TRAP = "trap"


class SandboxFault(TesseraError):
    """The guest was stopped by the sandbox or trapped on its own."""

    def __init__(self, kind: FaultKind, message: str):
        self.kind = FaultKind(kind)
        self.message = message
        super().__init__(f"{self.kind.value}: {message}")


class ProtocolError(TesseraError):
    """Guest output violated the wire or memory protocol."""


class CommandNotFound(TesseraError):
    """No plugin is registered under the requested command name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"command not found: {name}")


class StoreError(TesseraError):
    """The grant store could not be read or written."""


class WasiError(TesseraError):
    """A declared capability cannot be mapped onto the WASI context."""


class SandboxEscape(WasiError):
    """A relative path pattern resolves outside the working directory."""

    def __init__(self, pattern: str, resolved: Path, root: Path):
        self.pattern = pattern
        self.resolved = resolved
        self.root = root
        super().__init__(f"path '{pattern}' resolves to {resolved}, outside {root}")


class InvalidEnvPattern(WasiError):
    """An ``env_read`` pattern is empty, malformed or too broad."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        super().__init__(f"invalid env pattern '{pattern}': {reason}")
