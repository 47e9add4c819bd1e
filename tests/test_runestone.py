from __future__ import annotations

import pytest

from rune_etcher import varint
from rune_etcher.model import EtchingSpec, InvalidEtching, MintReference, MintTerms
from rune_etcher.names import InvalidNameCharacter
from rune_etcher.runestone import (
    Flag,
    Tag,
    TaggedField,
    TruncatedPayload,
    build_fields,
    describe_etching,
    etching_from_fields,
    parse_fields,
    parse_payload,
    serialize_etching,
)

MY_RUNE_PAYLOAD = bytes.fromhex(
    "0003" "0102" "0204" "0324" "04ced4aec900" "05e807" "07e400" "060a"
)


def _my_rune() -> EtchingSpec:
    return EtchingSpec(
        name="MY•RUNE",
        symbol="$",
        divisibility=2,
        premine=1000,
        terms=MintTerms(amount=100, cap=10),
    )


def test_field_order_matches_wire_format() -> None:
    fields = build_fields(_my_rune())

    assert [field.tag for field in fields] == [
        Tag.BODY,
        Tag.DIVISIBILITY,
        Tag.SPACERS,
        Tag.SYMBOL,
        Tag.RUNE,
        Tag.PREMINE,
        Tag.AMOUNT,
        Tag.CAP,
    ]
    assert fields[0].value == Flag.ETCHING | Flag.TERMS
    assert fields[2].value == 4


def test_serialize_known_payload() -> None:
    assert serialize_etching(_my_rune()) == MY_RUNE_PAYLOAD


def test_minimal_etching_omits_optional_fields() -> None:
    fields = build_fields(EtchingSpec(name="RUNE"))

    assert [field.tag for field in fields] == [Tag.BODY, Tag.RUNE, Tag.PREMINE]
    assert fields[0].value == Flag.ETCHING
    assert fields[2].value == 0


def test_turbo_mint_and_pointer_are_appended_last() -> None:
    txid = "11" * 31 + "22"
    spec = EtchingSpec(name="RUNE", turbo=True, mint=MintReference(txid=txid, vout=3), pointer=1)

    fields = build_fields(spec)

    assert fields[0].value == Flag.ETCHING | Flag.TURBO
    assert [field.tag for field in fields[-2:]] == [Tag.MINT, Tag.POINTER]
    reversed_txid = int.from_bytes(bytes.fromhex(txid)[::-1], "big")
    assert fields[-2].value == (reversed_txid << 8) | 3


def test_validation_happens_before_serialization() -> None:
    with pytest.raises(InvalidEtching):
        serialize_etching(EtchingSpec(name="RUNE", divisibility=19))
    with pytest.raises(InvalidEtching):
        serialize_etching(EtchingSpec(name="A" * 29))
    with pytest.raises(InvalidEtching):
        serialize_etching(EtchingSpec(name="RUNE", symbol="AB"))
    with pytest.raises(InvalidEtching):
        serialize_etching(EtchingSpec(name="RUNE", mint=MintReference(txid="00" * 32, vout=256)))
    with pytest.raises(InvalidNameCharacter):
        serialize_etching(EtchingSpec(name="my rune"))


def test_parse_preserves_order_duplicates_and_unknown_tags() -> None:
    extra = varint.encode(99) + varint.encode(7) + varint.encode(Tag.PREMINE) + varint.encode(5)
    payload = MY_RUNE_PAYLOAD + extra

    fields = parse_fields(payload)
    assert fields[-2] == TaggedField(99, 7)
    assert fields[-2].known_tag is None
    assert fields[-1] == TaggedField(Tag.PREMINE, 5)

    grouped = parse_payload(payload)
    assert grouped[99] == [7]
    assert grouped[Tag.PREMINE] == [1000, 5]
    assert grouped[Tag.RUNE] == [153856590]


def test_etching_from_fields_rebuilds_display_name() -> None:
    spec = etching_from_fields(parse_payload(MY_RUNE_PAYLOAD))

    assert spec == _my_rune()


def test_etching_from_fields_requires_etching_flag() -> None:
    payload = varint.encode(Tag.BODY) + varint.encode(0) + varint.encode(Tag.RUNE) + varint.encode(1)

    with pytest.raises(InvalidEtching):
        etching_from_fields(parse_payload(payload))


def test_tag_without_value_is_truncated() -> None:
    with pytest.raises(TruncatedPayload):
        parse_fields(b"\x00")


def test_value_cut_mid_varint_is_truncated() -> None:
    with pytest.raises(TruncatedPayload):
        parse_fields(MY_RUNE_PAYLOAD[:10])


def test_empty_payload_has_no_fields() -> None:
    assert parse_fields(b"") == []


def test_describe_etching() -> None:
    summary = describe_etching(_my_rune())

    assert summary.splitlines() == [
        "Rune Name: MY•RUNE",
        "Symbol: $",
        "Divisibility: 2",
        "Premine: 10.00 $",
        "Mintable: Yes",
        "Amount Per Mint: 100 $",
        "Max Mints: 10",
        "Maximum Supply: 1000 $",
    ]


def test_describe_fixed_supply_etching() -> None:
    summary = describe_etching(EtchingSpec(name="RUNE", symbol="R", premine=21))

    assert "Premine: 21 R" in summary
    assert "Mintable: No" in summary


def _etching_payload(*pairs: tuple[int, int]) -> bytes:
    fields = [(Tag.BODY, Flag.ETCHING), (Tag.RUNE, 5), *pairs]
    return b"".join(varint.encode(int(tag)) + varint.encode(int(value)) for tag, value in fields)


def test_symbol_outside_unicode_range_is_invalid() -> None:
    payload = _etching_payload((Tag.SYMBOL, 0x110000))

    with pytest.raises(InvalidEtching):
        etching_from_fields(parse_payload(payload))


def test_decoded_divisibility_is_validated() -> None:
    payload = _etching_payload((Tag.DIVISIBILITY, 40))

    with pytest.raises(InvalidEtching):
        etching_from_fields(parse_payload(payload))


def test_all_term_fields_follow_amount_and_cap() -> None:
    terms = MintTerms(
        amount=100,
        cap=10,
        height_start=840_000,
        height_end=850_000,
        offset_start=5,
        offset_end=5_000,
    )
    spec = EtchingSpec(name="MY•RUNE", premine=0, terms=terms)

    fields = build_fields(spec)

    assert [field.tag for field in fields] == [
        Tag.BODY,
        Tag.SPACERS,
        Tag.RUNE,
        Tag.PREMINE,
        Tag.AMOUNT,
        Tag.CAP,
        Tag.HEIGHT_START,
        Tag.HEIGHT_END,
        Tag.OFFSET_START,
        Tag.OFFSET_END,
    ]
    assert [int(field.tag) for field in fields[4:]] == [7, 6, 8, 9, 10, 11]
    assert [field.value for field in fields[4:]] == [100, 10, 840_000, 850_000, 5, 5_000]

    rebuilt = etching_from_fields(parse_payload(serialize_etching(spec)))
    assert rebuilt == spec
    assert rebuilt.terms == terms
