"""Variable-length integer codec used by the Runestone payload format.

Values are split into 7-bit groups emitted least-significant first. Every byte
except the last carries the continuation bit (``0x80``). Encoding stops only
once the remaining value is zero *and* bit 6 of the final group is clear, so a
terminating byte never looks like a sign extension. Python integers are
arbitrary precision, which covers premine and supply values well beyond 64
bits.
"""

from __future__ import annotations

from typing import List, Tuple

CONTINUATION_BIT = 0x80
SIGN_BIT = 0x40
GROUP_MASK = 0x7F


class MalformedVarInt(ValueError):
    """Raised when a byte sequence does not contain a complete varint."""


def encode(value: int) -> bytes:
    """Return the varint encoding of a non-negative integer."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"varint values must be integers, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"varint values must be non-negative, got {value}")

    result = bytearray()
    while True:
        byte = value & GROUP_MASK
        value >>= 7
        if value == 0 and not byte & SIGN_BIT:
            result.append(byte)
            return bytes(result)
        result.append(byte | CONTINUATION_BIT)


def decode(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode one varint starting at ``offset``.

    Returns ``(value, consumed)`` where ``consumed`` counts the bytes read.
    """

    value = 0
    shift = 0
    position = offset
    while position < len(data):
        byte = data[position]
        value |= (byte & GROUP_MASK) << shift
        position += 1
        if not byte & CONTINUATION_BIT:
            return value, position - offset
        shift += 7
    raise MalformedVarInt(
        f"varint starting at offset {offset} is not terminated "
        f"({len(data) - offset} byte(s) available)"
    )


def decode_all(data: bytes) -> List[int]:
    """Decode a buffer made of back-to-back varints."""

    values: List[int] = []
    offset = 0
    while offset < len(data):
        value, consumed = decode(data, offset)
        values.append(value)
        offset += consumed
    return values
