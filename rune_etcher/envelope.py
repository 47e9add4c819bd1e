"""Envelope framing for Runestone payloads.

The envelope is a fixed template that makes the payload recognisable to
script-interpreting indexers::

    OP_FALSE OP_IF "ord" 0x01 <payload> <empty> OP_ENDIF

The framer never looks inside the payload; validation belongs to
:mod:`rune_etcher.runestone`.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_IF = 0x63
OP_ENDIF = 0x68
OP_RETURN = 0x6A

PROTOCOL_ID = b"ord"
ENVELOPE_VERSION = 0x01
MAX_SCRIPT_ELEMENT_SIZE = 520

_OPCODE_CHUNKS = {0: OP_FALSE, 1: OP_IF, 6: OP_ENDIF}


class EnvelopeError(ValueError):
    """Raised when a script does not match the envelope template."""


def frame(payload: bytes) -> List[bytes]:
    """Return the ordered envelope chunks wrapping ``payload``."""

    return [
        bytes([OP_FALSE]),
        bytes([OP_IF]),
        PROTOCOL_ID,
        bytes([ENVELOPE_VERSION]),
        bytes(payload),
        b"",
        bytes([OP_ENDIF]),
    ]


def push_data(data: bytes) -> bytes:
    """Return the minimal push opcode sequence for ``data``."""

    length = len(data)
    if length > MAX_SCRIPT_ELEMENT_SIZE:
        raise ValueError(
            f"script element is {length} bytes; the limit is {MAX_SCRIPT_ELEMENT_SIZE}"
        )
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data


def compile_envelope(chunks: Sequence[bytes]) -> bytes:
    """Compile framed chunks into script bytes.

    The structural markers are emitted as bare opcodes; every other chunk,
    including the empty terminator, becomes a data push.
    """

    if len(chunks) != 7:
        raise EnvelopeError(f"envelope must have 7 chunks, got {len(chunks)}")

    script = bytearray()
    for index, chunk in enumerate(chunks):
        opcode = _OPCODE_CHUNKS.get(index)
        if opcode is not None:
            if chunk != bytes([opcode]):
                raise EnvelopeError(f"chunk {index} must be opcode {opcode:#04x}, got {chunk.hex()}")
            script.append(opcode)
        else:
            script += push_data(chunk)
    return bytes(script)


def runestone_script(payload: bytes) -> bytes:
    """Return the zero-value output script carrying ``payload``."""

    return bytes([OP_RETURN]) + compile_envelope(frame(payload))


def _read_push(script: bytes, offset: int) -> Tuple[bytes, int]:
    if offset >= len(script):
        raise EnvelopeError("script ended before an expected push")
    opcode = script[offset]
    offset += 1
    if opcode < OP_PUSHDATA1:
        length = opcode
    elif opcode == OP_PUSHDATA1:
        if offset + 1 > len(script):
            raise EnvelopeError("truncated OP_PUSHDATA1 length")
        length = script[offset]
        offset += 1
    elif opcode == OP_PUSHDATA2:
        if offset + 2 > len(script):
            raise EnvelopeError("truncated OP_PUSHDATA2 length")
        length = int.from_bytes(script[offset : offset + 2], "little")
        offset += 2
    else:
        raise EnvelopeError(f"expected a data push, found opcode {opcode:#04x}")
    end = offset + length
    if end > len(script):
        raise EnvelopeError(f"push of {length} bytes runs past the end of the script")
    return script[offset:end], end


def unframe(script: bytes) -> bytes:
    """Extract the payload from a compiled envelope (with or without ``OP_RETURN``)."""

    offset = 1 if script[:1] == bytes([OP_RETURN]) else 0
    if script[offset : offset + 2] != bytes([OP_FALSE, OP_IF]):
        raise EnvelopeError("script does not open with OP_FALSE OP_IF")
    offset += 2

    protocol, offset = _read_push(script, offset)
    if protocol != PROTOCOL_ID:
        raise EnvelopeError(f"unexpected protocol identifier {protocol!r}")
    version, offset = _read_push(script, offset)
    if version != bytes([ENVELOPE_VERSION]):
        raise EnvelopeError(f"unsupported envelope version {version.hex()}")
    payload, offset = _read_push(script, offset)
    terminator, offset = _read_push(script, offset)
    if terminator:
        raise EnvelopeError("envelope terminator must be empty")
    if script[offset:] != bytes([OP_ENDIF]):
        raise EnvelopeError("script does not close with OP_ENDIF")
    return payload
