from __future__ import annotations

import pytest

from rune_etcher.envelope import (
    EnvelopeError,
    compile_envelope,
    frame,
    push_data,
    runestone_script,
    unframe,
)


def test_frame_wraps_payload_in_fixed_chunks() -> None:
    assert frame(b"\x01\x02") == [
        b"\x00",
        b"\x63",
        b"ord",
        b"\x01",
        b"\x01\x02",
        b"",
        b"\x68",
    ]


def test_frame_accepts_empty_payload() -> None:
    chunks = frame(b"")

    assert len(chunks) == 7
    assert chunks[4] == b""


def test_runestone_script_layout() -> None:
    script = runestone_script(b"\xaa")

    assert script == bytes.fromhex("6a" "0063" "036f7264" "0101" "01aa" "00" "68")


def test_push_data_small_literal() -> None:
    data = b"x" * 75

    assert push_data(data) == b"\x4b" + data


def test_push_data_op_pushdata1() -> None:
    data = b"x" * 100

    encoded = push_data(data)

    assert encoded.startswith(b"\x4c\x64")
    assert len(encoded) == 2 + len(data)


def test_push_data_op_pushdata2() -> None:
    data = b"x" * 300

    encoded = push_data(data)

    assert encoded.startswith(b"\x4d")
    assert encoded[1:3] == len(data).to_bytes(2, "little")
    assert len(encoded) == 1 + 2 + len(data)


def test_push_data_too_large() -> None:
    with pytest.raises(ValueError):
        push_data(b"x" * 521)


def test_compile_rejects_wrong_chunk_count() -> None:
    with pytest.raises(EnvelopeError):
        compile_envelope(frame(b"\x01")[:-1])


def test_compile_rejects_misplaced_opcode() -> None:
    chunks = frame(b"\x01")
    chunks[1] = b"\x64"

    with pytest.raises(EnvelopeError):
        compile_envelope(chunks)


def test_unframe_recovers_payload() -> None:
    payload = bytes(range(200))

    assert unframe(runestone_script(payload)) == payload
    assert unframe(compile_envelope(frame(payload))) == payload


def test_unframe_rejects_foreign_protocol() -> None:
    script = bytes.fromhex("6a" "0063" "03626164" "0101" "01aa" "00" "68")

    with pytest.raises(EnvelopeError):
        unframe(script)


def test_unframe_rejects_missing_endif() -> None:
    with pytest.raises(EnvelopeError):
        unframe(runestone_script(b"\xaa")[:-1])
