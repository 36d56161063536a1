"""Memory bridge between the host and a guest's linear memory.

The guest owns all of its memory. The host asks the guest to ``alloc`` a
buffer before writing anything it wants the guest to read, and hands every
buffer the guest returns back to ``dealloc`` exactly once when it is done
reading. Both directions are wrapped in context managers so the paired
``dealloc`` runs on every exit path.

Function results that describe a buffer are packed into one 64-bit value:
the high 32 bits hold the address and the low 32 bits the length.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from tessera.errors import ProtocolError


U32_MASK = 0xFFFFFFFF
U64_MASK = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class ExportNames:
    """Names of the functions a guest module must export."""

    alloc: str
    dealloc: str
    get_manifest: str
    invoke: str
    memory: str = "memory"

    def functions(self) -> tuple[str, str, str, str]:
        return (self.alloc, self.dealloc, self.get_manifest, self.invoke)


CANONICAL_EXPORTS = ExportNames(
    alloc="alloc",
    dealloc="dealloc",
    get_manifest="get_manifest",
    invoke="invoke",
)

# Accepted when a module does not export the canonical names.
LEGACY_EXPORTS = ExportNames(
    alloc="plugin_alloc",
    dealloc="plugin_dealloc",
    get_manifest="plugin_manifest",
    invoke="plugin_execute",
)


class GuestMemory(Protocol):
    """The slice of a guest instance the bridge needs."""

    def alloc(self, size: int) -> int: ...

    def dealloc(self, address: int, size: int) -> None: ...

    def read(self, address: int, length: int) -> bytes: ...

    def write(self, address: int, data: bytes) -> None: ...

    def size(self) -> int: ...


def pack(address: int, length: int) -> int:
    """Pack an address and length into a 64-bit return value."""
    if not 0 <= address <= U32_MASK or not 0 <= length <= U32_MASK:
        raise ValueError(f"address/length out of 32-bit range: ({address}, {length})")
    return (address << 32) | length


def unpack(packed: int) -> tuple[int, int]:
    """Split a packed 64-bit value into ``(address, length)``.

    wasmtime hands ``i64`` results back as signed integers, so the value is
    reinterpreted as unsigned first.
    """
    packed &= U64_MASK
    return packed >> 32, packed & U32_MASK


def check_bounds(memory_size: int, address: int, length: int) -> None:
    """Raise :class:`ProtocolError` unless ``[address, address+length)`` fits."""
    if address < 0 or length < 0 or address + length > memory_size:
        raise ProtocolError(
            f"buffer ({address}, {length}) exceeds guest memory of {memory_size} bytes"
        )


@contextmanager
def guest_buffer(memory: GuestMemory, data: bytes) -> Iterator[tuple[int, int]]:
    """Copy ``data`` into a guest-allocated buffer for the duration of a call.

    Args:
        memory: Guest instance adapter
        data: Bytes the guest should read

    Yields:
        ``(address, length)`` of the guest copy. An empty payload yields
        ``(0, 0)`` without allocating.

    Raises:
        ProtocolError: If the guest fails the allocation or returns an
            address outside its own memory
    """
    if not data:
        yield 0, 0
        return

    length = len(data)
    if length > U32_MASK:
        raise ProtocolError(f"payload of {length} bytes exceeds 32-bit length")

    address = memory.alloc(length)
    if address == 0:
        raise ProtocolError(f"guest failed to allocate {length} bytes")

    try:
        check_bounds(memory.size(), address, length)
        memory.write(address, data)
        yield address, length
    finally:
        memory.dealloc(address, length)


@contextmanager
def returned_buffer(memory: GuestMemory, packed: int) -> Iterator[bytes]:
    """Read a guest-returned buffer and give it back to the guest afterwards.

    The buffer is deallocated exactly once, including when it turns out to
    be out of bounds or the caller fails while decoding it.

    Args:
        memory: Guest instance adapter
        packed: Packed ``(address, length)`` returned by the guest

    Yields:
        A host-side copy of the buffer contents

    Raises:
        ProtocolError: If the pointer is null with a length, or out of bounds
    """
    address, length = unpack(packed)
    try:
        if address == 0 and length:
            raise ProtocolError(f"guest returned a null pointer with length {length}")
        check_bounds(memory.size(), address, length)
        yield memory.read(address, length) if length else b""
    finally:
        if address:
            memory.dealloc(address, length)
