from __future__ import annotations

import pytest

from rune_etcher import varint
from rune_etcher.varint import MalformedVarInt


def test_small_values_fit_in_one_byte() -> None:
    assert varint.encode(0) == b"\x00"
    assert varint.encode(1) == b"\x01"
    assert varint.encode(63) == b"\x3f"


def test_bit_six_forces_an_extra_byte() -> None:
    assert varint.encode(64) == b"\xc0\x00"
    assert varint.encode(127) == b"\xff\x00"


def test_multi_byte_values() -> None:
    assert varint.encode(128) == b"\x80\x01"
    assert varint.encode(300) == b"\xac\x02"
    assert varint.encode(1000) == b"\xe8\x07"


def test_decode_reports_consumed_bytes() -> None:
    assert varint.decode(b"\xac\x02\x05") == (300, 2)
    assert varint.decode(b"\xac\x02\x05", offset=2) == (5, 1)
    assert varint.decode(b"\xc0\x00") == (64, 2)


def test_values_beyond_64_bits_survive() -> None:
    value = 2**100 + 12345
    encoded = varint.encode(value)

    assert varint.decode(encoded) == (value, len(encoded))


def test_decode_all_reads_back_to_back_values() -> None:
    data = varint.encode(300) + varint.encode(0) + varint.encode(64)

    assert varint.decode_all(data) == [300, 0, 64]


def test_unterminated_input_is_malformed() -> None:
    with pytest.raises(MalformedVarInt):
        varint.decode(b"\x80")
    with pytest.raises(MalformedVarInt):
        varint.decode(b"")
    with pytest.raises(MalformedVarInt):
        varint.decode_all(b"\x01\xff")


@pytest.mark.parametrize("value", [-1, 1.5, "7", True])
def test_encode_rejects_non_integers_and_negatives(value) -> None:
    with pytest.raises(ValueError):
        varint.encode(value)
