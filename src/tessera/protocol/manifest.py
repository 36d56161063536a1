"""Plugin manifest and invocation message types.

A guest describes itself through ``get_manifest``: the command it provides,
its arguments and subcommands, and the capabilities it needs from the host.
The manifest travels as a wire-encoded map. Decoders ignore keys they do not
know so the schema can grow without breaking older hosts.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tessera.errors import ApiVersionMismatch, ProtocolError
from tessera.protocol import wire

# Version 1 manifests predate capabilities; 2 added them.
API_VERSION = 2
SUPPORTED_API_VERSIONS = frozenset({1, 2})

USER_ERROR_CODE = 1
SYSTEM_ERROR_CODE = 101

COMMAND_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_:.\-]*$")


class CapabilityKind(StrEnum):
    """Kinds of host access a guest can request."""

    FS_READ = "fs_read"
    FS_WRITE = "fs_write"
    ENV_READ = "env_read"
    STDIN = "stdin"
    STDOUT = "stdout"
    STDERR = "stderr"
    # Reserved; manifests cannot declare it yet.
    NET = "net"

    @property
    def is_network(self) -> bool:
        return self is CapabilityKind.NET


@dataclass(frozen=True, order=True)
class CapabilityRequest:
    """One flattened capability: a kind plus the pattern it applies to.

    ``pattern`` is a path pattern for filesystem kinds, a variable name or
    ``PREFIX*`` glob for ``env_read`` and empty for stdio streams.
    """

    kind: CapabilityKind
    pattern: str = ""
    recursive: bool = False

    def __str__(self) -> str:
        if not self.pattern:
            return self.kind.value
        suffix = " (recursive)" if self.recursive else ""
        return f"{self.kind.value}:{self.pattern}{suffix}"


def _expect_map(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolError(f"{where}: expected a map, got {type(value).__name__}")
    return value


def _require_str(data: dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"{where}.{key}: expected a string")
    return value


def _optional_str(data: dict[str, Any], key: str, where: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"{where}.{key}: expected a string or nil")
    return value


def _optional_bool(data: dict[str, Any], key: str, where: str, default: bool = False) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ProtocolError(f"{where}.{key}: expected a boolean")
    return value


def _list_of(data: dict[str, Any], key: str, where: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolError(f"{where}.{key}: expected an array")
    return value


def _str_list(data: dict[str, Any], key: str, where: str) -> list[str]:
    items = _list_of(data, key, where)
    for index, item in enumerate(items):
        if not isinstance(item, str):
            raise ProtocolError(f"{where}.{key}[{index}]: expected a string")
    return items


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class PathPattern:
    """Filesystem path a guest wants to access."""

    pattern: str
    recursive: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {"pattern": self.pattern, "recursive": self.recursive}

    @classmethod
    def from_wire(cls, value: Any, where: str = "path") -> PathPattern:
        data = _expect_map(value, where)
        pattern = _require_str(data, "pattern", where)
        if not pattern:
            raise ProtocolError(f"{where}.pattern: must not be empty")
        return cls(pattern=pattern, recursive=_optional_bool(data, "recursive", where))


@dataclass(frozen=True)
class StdioCapability:
    """Standard streams a guest wants to inherit from the host."""

    stdin: bool = False
    stdout: bool = False
    stderr: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {"stdin": self.stdin, "stdout": self.stdout, "stderr": self.stderr}

    @classmethod
    def from_wire(cls, value: Any, where: str = "stdio") -> StdioCapability:
        data = _expect_map(value, where)
        return cls(
            stdin=_optional_bool(data, "stdin", where),
            stdout=_optional_bool(data, "stdout", where),
            stderr=_optional_bool(data, "stderr", where),
        )


@dataclass(frozen=True)
class Capabilities:
    """Declarative set of host resources a plugin asks for.

    Absent fields mean no access. Nothing is granted implicitly.
    """

    fs_read: tuple[PathPattern, ...] = ()
    fs_write: tuple[PathPattern, ...] = ()
    env_read: tuple[str, ...] = ()
    stdio: StdioCapability = field(default_factory=StdioCapability)

    @property
    def is_empty(self) -> bool:
        return not self.requests()

    def requests(self) -> list[CapabilityRequest]:
        """Flatten the set into individual requests in declaration order."""
        result = [
            CapabilityRequest(CapabilityKind.FS_READ, path.pattern, path.recursive)
            for path in self.fs_read
        ]
        result.extend(
            CapabilityRequest(CapabilityKind.FS_WRITE, path.pattern, path.recursive)
            for path in self.fs_write
        )
        result.extend(CapabilityRequest(CapabilityKind.ENV_READ, name) for name in self.env_read)
        for kind, wanted in (
            (CapabilityKind.STDIN, self.stdio.stdin),
            (CapabilityKind.STDOUT, self.stdio.stdout),
            (CapabilityKind.STDERR, self.stdio.stderr),
        ):
            if wanted:
                result.append(CapabilityRequest(kind))
        return result

    def compute_hash(self) -> str:
        """Stable SHA-256 digest of the declared set.

        Grants remember this digest; any change to the declared set yields a
        different digest and forces re-evaluation.
        """
        canonical = json.dumps(self.to_wire(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_wire(self) -> dict[str, Any]:
        return {
            "fs_read": [path.to_wire() for path in self.fs_read],
            "fs_write": [path.to_wire() for path in self.fs_write],
            "env_read": list(self.env_read),
            "stdio": self.stdio.to_wire(),
        }

    @classmethod
    def from_wire(cls, value: Any, where: str = "capabilities") -> Capabilities:
        if value is None:
            return cls()
        data = _expect_map(value, where)
        stdio = data.get("stdio")
        return cls(
            fs_read=tuple(
                PathPattern.from_wire(item, f"{where}.fs_read[{i}]")
                for i, item in enumerate(_list_of(data, "fs_read", where))
            ),
            fs_write=tuple(
                PathPattern.from_wire(item, f"{where}.fs_write[{i}]")
                for i, item in enumerate(_list_of(data, "fs_write", where))
            ),
            env_read=tuple(_str_list(data, "env_read", where)),
            stdio=StdioCapability.from_wire(stdio, f"{where}.stdio")
            if stdio is not None
            else StdioCapability(),
        )


@dataclass(frozen=True)
class ArgSpec:
    """Descriptive metadata for one command argument.

    The plugin parses its own argv; the host only uses this for help output.
    """

    name: str
    long: str | None = None
    short: str | None = None
    required: bool = False
    help: str | None = None
    value_name: str | None = None
    default_value: str | None = None
    possible_values: tuple[str, ...] | None = None

    def to_wire(self) -> dict[str, Any]:
        return _drop_none(
            {
                "name": self.name,
                "long": self.long,
                "short": self.short,
                "required": self.required,
                "help": self.help,
                "value_name": self.value_name,
                "default_value": self.default_value,
                "possible_values": list(self.possible_values)
                if self.possible_values is not None
                else None,
            }
        )

    @classmethod
    def from_wire(cls, value: Any, where: str = "arg") -> ArgSpec:
        data = _expect_map(value, where)
        short = _optional_str(data, "short", where)
        if short is not None and len(short) != 1:
            raise ProtocolError(f"{where}.short: expected a single character, got {short!r}")
        possible = data.get("possible_values")
        return cls(
            name=_require_str(data, "name", where),
            long=_optional_str(data, "long", where),
            short=short,
            required=_optional_bool(data, "required", where),
            help=_optional_str(data, "help", where),
            value_name=_optional_str(data, "value_name", where),
            default_value=_optional_str(data, "default_value", where),
            possible_values=tuple(_str_list(data, "possible_values", where))
            if possible is not None
            else None,
        )


@dataclass(frozen=True)
class CommandSpec:
    """The command a plugin contributes, with nested subcommands."""

    name: str
    about: str | None = None
    version: str | None = None
    author: str | None = None
    args: tuple[ArgSpec, ...] = ()
    subcommands: tuple[CommandSpec, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        return _drop_none(
            {
                "name": self.name,
                "about": self.about,
                "version": self.version,
                "author": self.author,
                "args": [arg.to_wire() for arg in self.args],
                "subcommands": [sub.to_wire() for sub in self.subcommands],
            }
        )

    @classmethod
    def from_wire(cls, value: Any, where: str = "command") -> CommandSpec:
        data = _expect_map(value, where)
        name = _require_str(data, "name", where)
        if not COMMAND_NAME_PATTERN.match(name):
            raise ProtocolError(f"{where}.name: invalid command name {name!r}")
        return cls(
            name=name,
            about=_optional_str(data, "about", where),
            version=_optional_str(data, "version", where),
            author=_optional_str(data, "author", where),
            args=tuple(
                ArgSpec.from_wire(item, f"{where}.args[{i}]")
                for i, item in enumerate(_list_of(data, "args", where))
            ),
            subcommands=tuple(
                CommandSpec.from_wire(item, f"{where}.subcommands[{i}]")
                for i, item in enumerate(_list_of(data, "subcommands", where))
            ),
        )


@dataclass(frozen=True)
class PluginManifest:
    """Everything a guest declares about itself."""

    command: CommandSpec
    api_version: int = API_VERSION
    capabilities: Capabilities = field(default_factory=Capabilities)

    @property
    def name(self) -> str:
        return self.command.name

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"api_version": self.api_version, "command": self.command.to_wire()}
        if self.api_version >= 2 or not self.capabilities.is_empty:
            data["capabilities"] = self.capabilities.to_wire()
        return data

    @classmethod
    def from_wire(cls, value: Any) -> PluginManifest:
        data = _expect_map(value, "manifest")
        api_version = data.get("api_version")
        if not isinstance(api_version, int) or isinstance(api_version, bool):
            raise ProtocolError("manifest.api_version: expected an unsigned integer")
        if api_version not in SUPPORTED_API_VERSIONS:
            raise ApiVersionMismatch(api_version, SUPPORTED_API_VERSIONS)
        return cls(
            api_version=api_version,
            command=CommandSpec.from_wire(data.get("command")),
            capabilities=Capabilities.from_wire(data.get("capabilities")),
        )


def encode_manifest(manifest: PluginManifest) -> bytes:
    return wire.encode(manifest.to_wire())


def decode_manifest(data: bytes) -> PluginManifest:
    """Decode and validate a manifest returned by ``get_manifest``.

    ``api_version`` is checked before any other field is looked at.

    Raises:
        ApiVersionMismatch: If the guest speaks an unsupported version
        ProtocolError: If the bytes or the manifest shape are malformed
    """
    return PluginManifest.from_wire(wire.decode(data))


@dataclass(frozen=True)
class ExecuteResult:
    """Outcome of one invocation.

    A success carries the command output. A failure carries a message and an
    exit code: ``1`` for the plugin's own (user-facing) errors and ``101``
    for system errors raised by the host on the guest's behalf.
    """

    success: bool
    output: str
    code: int = 0

    @classmethod
    def ok(cls, output: str) -> ExecuteResult:
        return cls(success=True, output=output, code=0)

    @classmethod
    def error(cls, message: str, code: int = USER_ERROR_CODE) -> ExecuteResult:
        return cls(success=False, output=message, code=code)

    @classmethod
    def system_error(cls, message: str) -> ExecuteResult:
        return cls.error(message, SYSTEM_ERROR_CODE)

    @property
    def message(self) -> str:
        return self.output

    @property
    def is_system_error(self) -> bool:
        return not self.success and self.code == SYSTEM_ERROR_CODE

    def to_wire(self) -> dict[str, Any]:
        return {"Success": self.output} if self.success else {"Error": self.output}

    @classmethod
    def from_wire(cls, value: Any) -> ExecuteResult:
        data = _expect_map(value, "result")
        if len(data) != 1:
            raise ProtocolError(f"result: expected exactly one variant, got {sorted(data)}")
        ((variant, payload),) = data.items()
        if variant == "Success":
            if not isinstance(payload, str):
                raise ProtocolError("result.Success: expected a string")
            return cls.ok(payload)
        if variant == "Error":
            if isinstance(payload, str):
                return cls.error(payload)
            # Older guests send {"code": int, "message": str}.
            detail = _expect_map(payload, "result.Error")
            code = detail.get("code", USER_ERROR_CODE)
            if not isinstance(code, int) or isinstance(code, bool):
                raise ProtocolError("result.Error.code: expected an unsigned integer")
            # Guest errors are never reported as success or as a host failure.
            if code in (0, SYSTEM_ERROR_CODE):
                code = USER_ERROR_CODE
            return cls.error(_require_str(detail, "message", "result.Error"), code)
        raise ProtocolError(f"result: unknown variant {variant!r}")


def encode_args(argv: list[str] | tuple[str, ...]) -> bytes:
    """Encode the raw argument tail handed to ``invoke``."""
    return wire.encode([str(arg) for arg in argv])


def decode_args(data: bytes) -> list[str]:
    value = wire.decode(data)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ProtocolError("args: expected an array of strings")
    return value


def decode_result(data: bytes) -> ExecuteResult:
    return ExecuteResult.from_wire(wire.decode(data))


def encode_result(result: ExecuteResult) -> bytes:
    return wire.encode(result.to_wire())
