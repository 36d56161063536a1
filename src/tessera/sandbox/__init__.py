"""Resource-bounded execution of plugin modules on wasmtime."""

from tessera.sandbox.runtime import (
    ExecutionState,
    PluginModule,
    SandboxConfig,
    SandboxRuntime,
    classify_trap,
)
from tessera.sandbox.wasi import SandboxValidator, WasiSpec, build_wasi_spec

__all__ = [
    "ExecutionState",
    "PluginModule",
    "SandboxConfig",
    "SandboxRuntime",
    "SandboxValidator",
    "WasiSpec",
    "build_wasi_spec",
    "classify_trap",
]
