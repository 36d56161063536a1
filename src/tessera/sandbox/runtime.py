"""wasmtime-backed sandbox for plugin modules.

Every guest runs inside a wasmtime store that enforces:
- An instruction fuel budget, refilled for each invocation
- A maximum call-stack size
- A linear-memory cap (64KB pages)
- A wall-clock timeout via epoch interruption, as a second safety net
- Imports restricted to WASI preview 1

Modules are compiled once. Each call gets a fresh store and instance, so no
guest state survives between invocations and concurrent calls never share
linear memory.

Example:
    >>> from tessera.sandbox import SandboxConfig, SandboxRuntime
    >>>
    >>> runtime = SandboxRuntime(SandboxConfig(fuel_limit=5_000_000))
    >>> plugin = runtime.compile_file("plugins/echo.wasm")
    >>> plugin.manifest.command.name
    'echo'
    >>> plugin.execute(["World"])
    ExecuteResult(success=True, output='Echo: World', code=0)
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path
from typing import Any

import wasmtime
from pydantic import BaseModel, Field

from tessera.errors import FaultKind, LoadError, SandboxFault, WasiError
from tessera.protocol.manifest import (
    CapabilityRequest,
    ExecuteResult,
    PluginManifest,
    decode_manifest,
    decode_result,
    encode_args,
)
from tessera.protocol.memory import (
    CANONICAL_EXPORTS,
    LEGACY_EXPORTS,
    U32_MASK,
    ExportNames,
    guest_buffer,
    returned_buffer,
)
from tessera.sandbox.wasi import SandboxValidator, WasiSpec, build_wasi_spec

logger = logging.getLogger(__name__)

# WASM magic bytes: \0asm
WASM_MAGIC = b"\x00asm"
WASM_PAGE_SIZE = 64 * 1024
WASI_MODULE = "wasi_snapshot_preview1"

# (params, results) every guest export must have.
EXPORT_SIGNATURES: dict[str, tuple[list[str], list[str]]] = {
    "alloc": (["i32"], ["i32"]),
    "dealloc": (["i32", "i32"], []),
    "get_manifest": ([], ["i64"]),
    "invoke": (["i32", "i32"], ["i64"]),
}


class ExecutionState(StrEnum):
    """Lifecycle of a single guest execution."""

    UNLOADED = "unloaded"
    VALIDATING = "validating"
    INSTANTIATED = "instantiated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    TRAPPED = "trapped"
    TIMED_OUT = "timed_out"


class SandboxConfig(BaseModel):
    """Resource limits for guest execution.

    Attributes:
        fuel_limit: Instruction fuel granted to every call.
        max_stack_bytes: Maximum guest call-stack size in bytes.
        max_memory_pages: Maximum linear memory (64KB pages). Default 256 = 16MB.
        timeout_seconds: Wall-clock limit for one call.
        epoch_tick_seconds: Resolution of the wall-clock timer.
        working_directory: Root that relative path capabilities resolve against.
        follow_symlinks: Resolve symlinks before checking path containment.
        require_existence: Fail instead of skipping granted paths that do not exist.
    """

    fuel_limit: int = Field(default=10_000_000, ge=1)
    max_stack_bytes: int = Field(default=1024 * 1024, ge=64 * 1024)
    max_memory_pages: int = Field(default=256, ge=1, le=65536)
    timeout_seconds: float = Field(default=30.0, gt=0)
    epoch_tick_seconds: float = Field(default=0.01, gt=0)
    working_directory: Path | None = None
    follow_symlinks: bool = True
    require_existence: bool = False


class EpochTicker:
    """Background thread that advances the engine epoch at a fixed rate.

    Stores set their deadline relative to the current epoch, so one ticker
    serves every concurrent execution on the engine.
    """

    def __init__(self, engine: wasmtime.Engine, interval: float):
        self._engine = engine
        self._interval = interval
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def ensure_started(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="tessera-epoch", daemon=True)
            self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._engine.increment_epoch()

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=1.0)


def classify_trap(error: Exception) -> SandboxFault:
    """Map a wasmtime trap or error onto a :class:`SandboxFault`."""
    code = getattr(error, "trap_code", None)
    message = str(error)
    lowered = message.lower()

    if code is not None and code == getattr(wasmtime.TrapCode, "OUT_OF_FUEL", None):
        kind = FaultKind.FUEL
    elif "fuel" in lowered:
        kind = FaultKind.FUEL
    elif code == wasmtime.TrapCode.STACK_OVERFLOW or "call stack exhausted" in lowered:
        kind = FaultKind.STACK
    elif code == wasmtime.TrapCode.INTERRUPT or "interrupt" in lowered:
        kind = FaultKind.TIMEOUT
    else:
        kind = FaultKind.TRAP

    first_line = message.strip().splitlines()[0] if message.strip() else type(error).__name__
    return SandboxFault(kind, first_line)


def _valtype_names(types: Iterable[Any]) -> list[str]:
    return [str(t) for t in types]


def resolve_exports(module: wasmtime.Module, path: Path | None = None) -> ExportNames:
    """Pick the export naming scheme the module uses and check signatures.

    Raises:
        LoadError: If exports are missing or have the wrong signature
    """
    exports = {export.name: export.type for export in module.exports}

    for names in (CANONICAL_EXPORTS, LEGACY_EXPORTS):
        if all(name in exports for name in names.functions()):
            break
    else:
        missing = [name for name in CANONICAL_EXPORTS.functions() if name not in exports]
        raise LoadError(f"missing required exports: {', '.join(missing)}", path)

    if not isinstance(exports.get(names.memory), wasmtime.MemoryType):
        raise LoadError(f"module must export its linear memory as '{names.memory}'", path)

    for role, export_name in zip(EXPORT_SIGNATURES, names.functions()):
        func_type = exports[export_name]
        if not isinstance(func_type, wasmtime.FuncType):
            raise LoadError(f"export '{export_name}' is not a function", path)
        expected_params, expected_results = EXPORT_SIGNATURES[role]
        params = _valtype_names(func_type.params)
        results = _valtype_names(func_type.results)
        if params != expected_params or results != expected_results:
            raise LoadError(
                f"export '{export_name}' has signature ({', '.join(params)}) -> "
                f"({', '.join(results)}), expected ({', '.join(expected_params)}) -> "
                f"({', '.join(expected_results)})",
                path,
            )
    return names


def check_imports(module: wasmtime.Module, path: Path | None = None) -> None:
    """Reject modules importing anything besides WASI preview 1."""
    for imported in module.imports:
        if imported.module != WASI_MODULE:
            raise LoadError(
                f"import {imported.module}::{imported.name} is not available; "
                f"only {WASI_MODULE} may be imported",
                path,
            )


def _to_i32(value: int) -> int:
    value &= U32_MASK
    return value - (1 << 32) if value >= (1 << 31) else value


class WasmtimeGuest:
    """Guest memory adapter over one wasmtime instance.

    After the guest traps, the store is discarded as a whole, so later
    ``dealloc`` calls become no-ops instead of re-entering a dead instance.
    """

    def __init__(self, store: wasmtime.Store, instance: wasmtime.Instance, names: ExportNames):
        exports = instance.exports(store)
        self._store = store
        self._alloc = exports[names.alloc]
        self._dealloc = exports[names.dealloc]
        self._get_manifest = exports[names.get_manifest]
        self._invoke = exports[names.invoke]
        self._memory = exports[names.memory]
        self.poisoned = False

    def _call(self, func: wasmtime.Func, *args: int) -> Any:
        try:
            return func(self._store, *args)
        except (wasmtime.Trap, wasmtime.WasmtimeError):
            self.poisoned = True
            raise

    def alloc(self, size: int) -> int:
        return self._call(self._alloc, _to_i32(size)) & U32_MASK

    def dealloc(self, address: int, size: int) -> None:
        if self.poisoned:
            return
        self._call(self._dealloc, _to_i32(address), _to_i32(size))

    def read(self, address: int, length: int) -> bytes:
        return bytes(self._memory.read(self._store, address, address + length))

    def write(self, address: int, data: bytes) -> None:
        self._memory.write(self._store, data, address)

    def size(self) -> int:
        return self._memory.data_len(self._store)

    def get_manifest(self) -> int:
        return self._call(self._get_manifest)

    def invoke(self, address: int, length: int) -> int:
        return self._call(self._invoke, _to_i32(address), _to_i32(length))


class SandboxRuntime:
    """Owns the wasmtime engine and the limits applied to every store."""

    def __init__(self, config: SandboxConfig | None = None):
        """Initialize the engine with fuel metering and epoch interruption.

        Args:
            config: Resource limits. Uses defaults if omitted.
        """
        self.config = config or SandboxConfig()

        engine_config = wasmtime.Config()
        engine_config.consume_fuel = True
        engine_config.epoch_interruption = True
        engine_config.max_wasm_stack = self.config.max_stack_bytes
        self.engine = wasmtime.Engine(engine_config)

        self.validator = SandboxValidator(
            working_directory=self.config.working_directory,
            follow_symlinks=self.config.follow_symlinks,
            require_existence=self.config.require_existence,
        )
        self._ticker = EpochTicker(self.engine, self.config.epoch_tick_seconds)
        self._stats_lock = threading.Lock()
        self._stats: dict[str, int] = {
            "modules_compiled": 0,
            "executions": 0,
            "execution_failures": 0,
            "faults": 0,
        }

    @property
    def deadline_ticks(self) -> int:
        return max(1, math.ceil(self.config.timeout_seconds / self.config.epoch_tick_seconds))

    def new_store(self, wasi: WasiSpec) -> wasmtime.Store:
        """Create a store with a full fuel tank and a fresh deadline."""
        store = wasmtime.Store(self.engine)
        store.set_fuel(self.config.fuel_limit)
        store.set_limits(memory_size=self.config.max_memory_pages * WASM_PAGE_SIZE)
        try:
            store.set_wasi(wasi.to_wasi_config())
        except (wasmtime.WasmtimeError, TypeError, ValueError) as e:
            raise WasiError(f"cannot build WASI context: {e}") from e
        self._ticker.ensure_started()
        store.set_epoch_deadline(self.deadline_ticks)
        return store

    def instantiate(
        self, module: wasmtime.Module, names: ExportNames, wasi: WasiSpec
    ) -> WasmtimeGuest:
        store = self.new_store(wasi)
        linker = wasmtime.Linker(self.engine)
        linker.define_wasi()
        instance = linker.instantiate(store, module)
        return WasmtimeGuest(store, instance, names)

    def compile(
        self,
        wasm_bytes: bytes,
        name: str = "plugin",
        source_path: Path | str | None = None,
    ) -> PluginModule:
        """Validate and compile a module, then read its manifest.

        Args:
            wasm_bytes: Raw module bytes
            name: Plugin identifier, usually the file stem
            source_path: File the bytes came from, for error reporting

        Returns:
            A compiled plugin whose manifest passed the api_version check

        Raises:
            LoadError: If the module is malformed or incompatible
            SandboxFault: If the guest traps while producing its manifest
            ProtocolError: If the manifest bytes are malformed
        """
        path = Path(source_path) if source_path is not None else None
        if not wasm_bytes.startswith(WASM_MAGIC):
            raise LoadError("not a WebAssembly module (bad magic bytes)", path)

        try:
            module = wasmtime.Module(self.engine, bytes(wasm_bytes))
        except wasmtime.WasmtimeError as e:
            raise LoadError(f"invalid module: {str(e).strip().splitlines()[0]}", path) from e

        names = resolve_exports(module, path)
        check_imports(module, path)

        plugin = PluginModule(
            runtime=self,
            module=module,
            exports=names,
            name=name,
            source_path=path,
            digest=hashlib.sha256(wasm_bytes).hexdigest(),
        )
        self._bump("modules_compiled")
        logger.debug(f"Compiled '{name}' ({len(wasm_bytes)} bytes, exports={names.invoke})")
        return plugin

    def compile_file(self, path: Path | str) -> PluginModule:
        path = Path(path)
        try:
            wasm_bytes = path.read_bytes()
        except OSError as e:
            raise LoadError(f"cannot read module: {e}", path) from e
        return self.compile(wasm_bytes, name=path.stem, source_path=path)

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return {
                **self._stats,
                "fuel_limit": self.config.fuel_limit,
                "timeout_seconds": self.config.timeout_seconds,
            }

    def close(self) -> None:
        """Stop the epoch ticker thread."""
        self._ticker.stop()


class PluginModule:
    """A compiled guest module and the manifest it declared.

    Instances are created per call; the compiled module itself is shared
    and safe to use from several threads.
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        module: wasmtime.Module,
        exports: ExportNames,
        name: str,
        source_path: Path | None,
        digest: str,
    ):
        self.runtime = runtime
        self.name = name
        self.source_path = source_path
        self.digest = digest
        self.exports = exports
        self._module = module
        self.last_state = ExecutionState.VALIDATING
        self.manifest: PluginManifest = self._fetch_manifest()

    @property
    def command_name(self) -> str:
        return self.manifest.command.name

    def _fetch_manifest(self) -> PluginManifest:
        wasi = WasiSpec(argv=[self.name])
        try:
            guest = self.runtime.instantiate(self._module, self.exports, wasi)
            self.last_state = ExecutionState.INSTANTIATED
            with returned_buffer(guest, guest.get_manifest()) as raw:
                manifest = decode_manifest(raw)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            fault = classify_trap(e)
            self.last_state = (
                ExecutionState.TIMED_OUT if fault.kind is FaultKind.TIMEOUT else ExecutionState.TRAPPED
            )
            raise fault from e
        except LoadError as e:
            if self.source_path is not None:
                raise e.with_path(self.source_path)
            raise
        self.last_state = ExecutionState.COMPLETED
        return manifest

    def execute(
        self, args: list[str] | tuple[str, ...], granted: Iterable[CapabilityRequest] = ()
    ) -> ExecuteResult:
        """Run ``invoke`` once in a fresh instance.

        Blocking; callers on an event loop should use ``asyncio.to_thread``.

        Args:
            args: Raw argument tail for the command
            granted: Capabilities the permission system allowed

        Returns:
            The guest's result, success or its own declared error

        Raises:
            SandboxFault: On fuel exhaustion, stack overflow, timeout or trap
            ProtocolError: If the guest's output violates the protocol
            WasiError: If a granted capability can no longer be mapped
        """
        args = [str(arg) for arg in args]
        payload = encode_args(args)
        wasi = build_wasi_spec(granted, [self.command_name, *args], self.runtime.validator)
        self.runtime._bump("executions")

        try:
            guest = self.runtime.instantiate(self._module, self.exports, wasi)
            self.last_state = ExecutionState.EXECUTING
            with guest_buffer(guest, payload) as (address, length):
                packed = guest.invoke(address, length)
                with returned_buffer(guest, packed) as raw:
                    result = decode_result(raw)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            fault = classify_trap(e)
            self.last_state = (
                ExecutionState.TIMED_OUT if fault.kind is FaultKind.TIMEOUT else ExecutionState.TRAPPED
            )
            self.runtime._bump("faults")
            logger.warning(f"Plugin '{self.name}' aborted: {fault}")
            raise fault from e
        except Exception:
            self.runtime._bump("execution_failures")
            raise

        self.last_state = ExecutionState.COMPLETED
        if not result.success:
            self.runtime._bump("execution_failures")
        return result

    def __repr__(self) -> str:
        return f"PluginModule(name={self.name!r}, command={self.command_name!r})"
