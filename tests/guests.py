"""WebAssembly guest modules for tests, written in WAT.

Every guest uses a bump allocator and keeps its manifest in a data segment.
Manifests are encoded with the host codec at build time so tests can
declare whatever capabilities they need.
"""

from __future__ import annotations

import wasmtime

from tessera.protocol.manifest import (
    API_VERSION,
    Capabilities,
    CommandSpec,
    ExecuteResult,
    PathPattern,
    PluginManifest,
    encode_manifest,
    encode_result,
)
from tessera.protocol.memory import CANONICAL_EXPORTS, ExportNames

MANIFEST_OFFSET = 2048
PAYLOAD_OFFSET = 3072

# {"Success": "Hello from Zig!"}
GREETING = b"\x81\xa7Success\xafHello from Zig!"

# Echoes its arguments joined by spaces, or greets when called without any.
# Only fixstr arguments (up to 31 bytes) are understood.
ECHO_INVOKE = f"""
    (local $count i32) (local $out i32) (local $w i32) (local $r i32) (local $n i32) (local $i i32)
    (local.set $count (i32.and (i32.load8_u (local.get $ptr)) (i32.const 0x0f)))
    (if (i32.eqz (local.get $count))
      (then (return (call $pack (i32.const 1024) (i32.const {len(GREETING)})))))
    (local.set $out (call $alloc (i32.const 512)))
    (memory.copy (local.get $out) (i32.const 1024) (i32.const 9))
    (i32.store8 offset=9 (local.get $out) (i32.const 0xd9))
    (memory.copy (i32.add (local.get $out) (i32.const 11)) (i32.const 1100) (i32.const 6))
    (local.set $w (i32.add (local.get $out) (i32.const 17)))
    (local.set $r (i32.add (local.get $ptr) (i32.const 1)))
    (block $done
      (loop $next
        (br_if $done (i32.ge_u (local.get $i) (local.get $count)))
        (if (local.get $i)
          (then
            (i32.store8 (local.get $w) (i32.const 32))
            (local.set $w (i32.add (local.get $w) (i32.const 1)))))
        (local.set $n (i32.and (i32.load8_u (local.get $r)) (i32.const 0x1f)))
        (memory.copy (local.get $w) (i32.add (local.get $r) (i32.const 1)) (local.get $n))
        (local.set $w (i32.add (local.get $w) (local.get $n)))
        (local.set $r (i32.add (local.get $r) (i32.add (local.get $n) (i32.const 1))))
        (local.set $i (i32.add (local.get $i) (i32.const 1)))
        (br $next)))
    (i32.store8 offset=10 (local.get $out)
      (i32.sub (local.get $w) (i32.add (local.get $out) (i32.const 11))))
    (call $pack (local.get $out) (i32.sub (local.get $w) (local.get $out)))
"""

LOOP_INVOKE = """
    (loop $spin (br $spin))
    (i64.const 0)
"""

RECURSE_INVOKE = """
    (call $recurse (i32.const 0))
    (drop)
    (i64.const 0)
"""

RECURSE_FUNC = """
  (func $recurse (param $depth i32) (result i32)
    (call $recurse (i32.add (local.get $depth) (i32.const 1))))
"""

UNREACHABLE_INVOKE = """
    (unreachable)
"""


def wat_string(data: bytes) -> str:
    """Escape bytes for a WAT data segment."""
    return "".join(f"\\{byte:02x}" for byte in data)


def make_manifest(
    name: str = "echo",
    *,
    about: str | None = "Echo arguments back",
    version: str | None = "1.0.0",
    api_version: int = API_VERSION,
    env_read: tuple[str, ...] = (),
    fs_read: tuple[str, ...] = (),
    fs_write: tuple[str, ...] = (),
) -> PluginManifest:
    return PluginManifest(
        command=CommandSpec(name=name, about=about, version=version),
        api_version=api_version,
        capabilities=Capabilities(
            fs_read=tuple(PathPattern(path) for path in fs_read),
            fs_write=tuple(PathPattern(path) for path in fs_write),
            env_read=env_read,
        ),
    )


def guest_wat(
    manifest: PluginManifest | bytes,
    invoke: str = ECHO_INVOKE,
    *,
    names: ExportNames = CANONICAL_EXPORTS,
    payload: bytes = b"",
    imports: str = "",
    extra: str = "",
) -> str:
    raw = manifest if isinstance(manifest, bytes) else encode_manifest(manifest)
    return f"""
(module
  {imports}
  (memory (export "{names.memory}") 2)
  (global $heap (mut i32) (i32.const 8192))
  (data (i32.const 1024) "{wat_string(GREETING)}")
  (data (i32.const 1100) "Echo: ")
  (data (i32.const {MANIFEST_OFFSET}) "{wat_string(raw)}")
  (data (i32.const {PAYLOAD_OFFSET}) "{wat_string(payload)}")
  (func $pack (param $ptr i32) (param $len i32) (result i64)
    (i64.or
      (i64.shl (i64.extend_i32_u (local.get $ptr)) (i64.const 32))
      (i64.extend_i32_u (local.get $len))))
  (func $alloc (export "{names.alloc}") (param $size i32) (result i32)
    (local $ptr i32)
    (local.set $ptr (global.get $heap))
    (global.set $heap (i32.add (global.get $heap) (local.get $size)))
    (local.get $ptr))
  (func (export "{names.dealloc}") (param i32 i32))
  (func (export "{names.get_manifest}") (result i64)
    (call $pack (i32.const {MANIFEST_OFFSET}) (i32.const {len(raw)})))
  (func (export "{names.invoke}") (param $ptr i32) (param $len i32) (result i64)
    {invoke})
  {extra}
)
"""


def build(wat: str) -> bytes:
    return wasmtime.wat2wasm(wat)


def echo_guest(name: str = "echo", *, names: ExportNames = CANONICAL_EXPORTS, **manifest_fields) -> bytes:
    return build(guest_wat(make_manifest(name, **manifest_fields), names=names))


def payload_guest(payload: bytes, name: str = "fixed", **manifest_fields) -> bytes:
    """Guest whose ``invoke`` always returns ``payload`` verbatim."""
    invoke = f"(call $pack (i32.const {PAYLOAD_OFFSET}) (i32.const {len(payload)}))"
    return build(guest_wat(make_manifest(name, **manifest_fields), invoke, payload=payload))


def error_guest(message: str, name: str = "fails") -> bytes:
    return payload_guest(encode_result(ExecuteResult.error(message)), name=name)


def looping_guest(name: str = "spin") -> bytes:
    return build(guest_wat(make_manifest(name), LOOP_INVOKE))


def recursing_guest(name: str = "deep") -> bytes:
    return build(guest_wat(make_manifest(name), RECURSE_INVOKE, extra=RECURSE_FUNC))


def out_of_bounds_guest(name: str = "wild") -> bytes:
    """Returns a buffer far past the end of its two-page memory."""
    return build(guest_wat(make_manifest(name), "(i64.const 0x7fff000000000010)"))


def versioned_guest(api_version: int, name: str = "future") -> bytes:
    """Declares ``api_version``; traps if ``invoke`` is ever reached."""
    return build(guest_wat(make_manifest(name, api_version=api_version), UNREACHABLE_INVOKE))


def importing_guest(module: str = "env", field: str = "host_fn", name: str = "needy") -> bytes:
    imports = f'(import "{module}" "{field}" (func $imported (param i32)))'
    return build(guest_wat(make_manifest(name), imports=imports))
