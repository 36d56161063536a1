"""Binary wire codec for host/guest data exchange.

The codec is a strict subset of MessagePack covering the only shapes the
plugin protocol needs: nil, booleans, unsigned integers up to 32 bits,
UTF-8 strings, arrays and string-keyed maps. Multi-byte lengths and values
are big-endian.

Guest output is untrusted, so decoding checks every declared length against
the bytes that remain before reading and turns any violation into
:class:`~tessera.errors.ProtocolError`.

Example:
    >>> from tessera.protocol import wire
    >>> wire.encode({"name": "echo", "args": ["World"]})
    b'\\x82\\xa4name\\xa4echo\\xa4args\\x91\\xa5World'
    >>> wire.decode(b'\\x92\\xa1a\\xc3')
    ['a', True]
"""

from __future__ import annotations

import struct
from typing import Any

from tessera.errors import ProtocolError

NIL = 0xC0
FALSE = 0xC2
TRUE = 0xC3
UINT8 = 0xCC
UINT16 = 0xCD
UINT32 = 0xCE
STR8 = 0xD9
STR16 = 0xDA
STR32 = 0xDB
ARRAY16 = 0xDC
ARRAY32 = 0xDD
MAP16 = 0xDE
MAP32 = 0xDF

FIXSTR = 0xA0
FIXARRAY = 0x90
FIXMAP = 0x80

UINT32_MAX = 0xFFFFFFFF

# Nesting limit for both directions; manifests are a few levels deep.
MAX_DEPTH = 64


def encode(value: Any) -> bytes:
    """Encode a value to wire bytes.

    Args:
        value: ``None``, ``bool``, ``int`` in ``[0, 2**32)``, ``str``,
            ``list``/``tuple`` or ``dict`` with ``str`` keys, nested freely.

    Returns:
        Encoded bytes using the smallest form for every item

    Raises:
        ProtocolError: If the value (or anything inside it) is not encodable
    """
    out = bytearray()
    _encode_into(out, value, 0)
    return bytes(out)


def _encode_into(out: bytearray, value: Any, depth: int) -> None:
    if depth > MAX_DEPTH:
        raise ProtocolError(f"value nested deeper than {MAX_DEPTH} levels")

    if value is None:
        out.append(NIL)
    elif isinstance(value, bool):
        out.append(TRUE if value else FALSE)
    elif isinstance(value, int):
        _encode_uint(out, value)
    elif isinstance(value, str):
        try:
            raw = value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ProtocolError(f"string is not valid UTF-8: {e}") from e
        _write_length(out, len(raw), FIXSTR, 31, (STR8, STR16, STR32))
        out += raw
    elif isinstance(value, (list, tuple)):
        _write_length(out, len(value), FIXARRAY, 15, (None, ARRAY16, ARRAY32))
        for item in value:
            _encode_into(out, item, depth + 1)
    elif isinstance(value, dict):
        _write_length(out, len(value), FIXMAP, 15, (None, MAP16, MAP32))
        for key, item in value.items():
            if not isinstance(key, str):
                raise ProtocolError(f"map keys must be strings, got {type(key).__name__}")
            _encode_into(out, key, depth + 1)
            _encode_into(out, item, depth + 1)
    else:
        raise ProtocolError(f"cannot encode value of type {type(value).__name__}")


def _encode_uint(out: bytearray, value: int) -> None:
    if value < 0:
        raise ProtocolError(f"negative integers are not supported: {value}")
    if value <= 0x7F:
        out.append(value)
    elif value <= 0xFF:
        out += bytes((UINT8, value))
    elif value <= 0xFFFF:
        out += struct.pack(">BH", UINT16, value)
    elif value <= UINT32_MAX:
        out += struct.pack(">BI", UINT32, value)
    else:
        raise ProtocolError(f"integer {value} does not fit in 32 bits")


def _write_length(
    out: bytearray,
    length: int,
    fix_tag: int,
    fix_max: int,
    tags: tuple[int | None, int, int],
) -> None:
    """Write a length header, picking the inline form when it fits."""
    tag8, tag16, tag32 = tags
    if length <= fix_max:
        out.append(fix_tag | length)
    elif tag8 is not None and length <= 0xFF:
        out += bytes((tag8, length))
    elif length <= 0xFFFF:
        out += struct.pack(">BH", tag16, length)
    elif length <= UINT32_MAX:
        out += struct.pack(">BI", tag32, length)
    else:
        raise ProtocolError(f"length {length} does not fit in 32 bits")


class Decoder:
    """Incremental decoder over an immutable byte buffer.

    ``offset`` always points at the next unread byte, so callers that embed
    wire values inside a larger frame can keep reading after a value.
    """

    def __init__(self, data: bytes | bytearray | memoryview):
        self._view = memoryview(data).cast("B")
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self._view) - self.offset

    def read_value(self, depth: int = 0) -> Any:
        """Read exactly one value starting at ``offset``.

        Raises:
            ProtocolError: On unknown tags, truncation or invalid UTF-8
        """
        if depth > MAX_DEPTH:
            raise ProtocolError(f"value nested deeper than {MAX_DEPTH} levels")

        start = self.offset
        tag = self._byte()

        if tag <= 0x7F:
            return tag
        if 0xA0 <= tag <= 0xBF:
            return self._str(tag & 0x1F)
        if 0x90 <= tag <= 0x9F:
            return self._array(tag & 0x0F, depth)
        if 0x80 <= tag <= 0x8F:
            return self._map(tag & 0x0F, depth)

        if tag == NIL:
            return None
        if tag == FALSE:
            return False
        if tag == TRUE:
            return True
        if tag == UINT8:
            return self._uint(1)
        if tag == UINT16:
            return self._uint(2)
        if tag == UINT32:
            return self._uint(4)
        if tag == STR8:
            return self._str(self._uint(1))
        if tag == STR16:
            return self._str(self._uint(2))
        if tag == STR32:
            return self._str(self._uint(4))
        if tag == ARRAY16:
            return self._array(self._uint(2), depth)
        if tag == ARRAY32:
            return self._array(self._uint(4), depth)
        if tag == MAP16:
            return self._map(self._uint(2), depth)
        if tag == MAP32:
            return self._map(self._uint(4), depth)

        raise ProtocolError(f"unknown tag 0x{tag:02x} at offset {start}")

    def _take(self, size: int) -> memoryview:
        if size > self.remaining:
            raise ProtocolError(
                f"truncated input: need {size} bytes at offset {self.offset}, "
                f"{self.remaining} available"
            )
        chunk = self._view[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def _byte(self) -> int:
        return self._take(1)[0]

    def _uint(self, size: int) -> int:
        return int.from_bytes(self._take(size), "big")

    def _str(self, length: int) -> str:
        raw = self._take(length)
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"string is not valid UTF-8: {e}") from e

    def _array(self, count: int, depth: int) -> list[Any]:
        # Every element takes at least one byte.
        if count > self.remaining:
            raise ProtocolError(f"array declares {count} items but only {self.remaining} bytes remain")
        return [self.read_value(depth + 1) for _ in range(count)]

    def _map(self, count: int, depth: int) -> dict[str, Any]:
        if count * 2 > self.remaining:
            raise ProtocolError(f"map declares {count} entries but only {self.remaining} bytes remain")
        result: dict[str, Any] = {}
        for _ in range(count):
            key_offset = self.offset
            key = self.read_value(depth + 1)
            if not isinstance(key, str):
                raise ProtocolError(f"map key at offset {key_offset} is not a string")
            result[key] = self.read_value(depth + 1)
        return result


def decode(data: bytes | bytearray | memoryview) -> Any:
    """Decode exactly one wire value.

    Args:
        data: Complete encoded buffer

    Returns:
        The decoded value (dicts keep wire order)

    Raises:
        ProtocolError: If the buffer is malformed or has trailing bytes
    """
    decoder = Decoder(data)
    value = decoder.read_value()
    if decoder.remaining:
        raise ProtocolError(f"{decoder.remaining} trailing bytes after value")
    return value
