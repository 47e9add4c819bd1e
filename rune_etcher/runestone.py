"""Runestone tagged-field payload serializer and parser.

A payload is a flat run of ``varint(tag) || varint(value)`` pairs. The field
order produced by :func:`build_fields` is part of the wire format and must not
be rearranged: flags, etching fields, mint terms, mint reference, pointer.

Parsing is deliberately tolerant of tags it does not know and of repeated
tags. Both are preserved in the order they appear so newer payloads survive a
round trip through older tooling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Dict, Iterable, List, Mapping, Sequence

from . import varint
from .model import EtchingSpec, InvalidEtching, MintReference, MintTerms
from .names import apply_spacers, compute_spacers, decode_name, encode_name

logger = logging.getLogger(__name__)


class Tag(IntEnum):
    BODY = 0
    DIVISIBILITY = 1
    SPACERS = 2
    SYMBOL = 3
    RUNE = 4
    PREMINE = 5
    CAP = 6
    AMOUNT = 7
    HEIGHT_START = 8
    HEIGHT_END = 9
    OFFSET_START = 10
    OFFSET_END = 11
    MINT = 12
    POINTER = 13
    CENOTAPH = 127


_KNOWN_TAGS = frozenset(int(tag) for tag in Tag)

# Tag 0 carries the flag bits for an etching.
FLAGS_TAG = Tag.BODY


class Flag(IntFlag):
    ETCHING = 0x01
    TERMS = 0x02
    TURBO = 0x04
    CENOTAPH = 0x80


class TruncatedPayload(ValueError):
    """Raised when a payload ends partway through a tag/value pair."""


@dataclass(frozen=True)
class TaggedField:
    """One ``(tag, value)`` pair. ``tag`` stays a plain int for unknown tags."""

    tag: int
    value: int

    @property
    def known_tag(self) -> Tag | None:
        try:
            return Tag(self.tag)
        except ValueError:
            return None

    def encode(self) -> bytes:
        return varint.encode(int(self.tag)) + varint.encode(self.value)


_TERM_FIELDS = (
    (Tag.AMOUNT, "amount"),
    (Tag.CAP, "cap"),
    (Tag.HEIGHT_START, "height_start"),
    (Tag.HEIGHT_END, "height_end"),
    (Tag.OFFSET_START, "offset_start"),
    (Tag.OFFSET_END, "offset_end"),
)


def etching_flags(spec: EtchingSpec) -> Flag:
    flags = Flag.ETCHING
    if spec.terms is not None:
        flags |= Flag.TERMS
    if spec.turbo:
        flags |= Flag.TURBO
    return flags


def build_fields(spec: EtchingSpec) -> List[TaggedField]:
    """Return the ordered tagged fields describing ``spec``."""

    spec.validate()
    fields = [TaggedField(FLAGS_TAG, int(etching_flags(spec)))]

    if spec.divisibility:
        fields.append(TaggedField(Tag.DIVISIBILITY, spec.divisibility))

    spacers = compute_spacers(spec.name)
    if spacers:
        fields.append(TaggedField(Tag.SPACERS, spacers))

    if spec.symbol:
        fields.append(TaggedField(Tag.SYMBOL, ord(spec.symbol[0])))

    fields.append(TaggedField(Tag.RUNE, encode_name(spec.name)))
    fields.append(TaggedField(Tag.PREMINE, spec.premine))

    if spec.terms is not None:
        for tag, attribute in _TERM_FIELDS:
            value = getattr(spec.terms, attribute)
            if value is not None:
                fields.append(TaggedField(tag, value))

    if spec.mint is not None:
        fields.append(TaggedField(Tag.MINT, spec.mint.pack()))

    if spec.pointer is not None:
        fields.append(TaggedField(Tag.POINTER, spec.pointer))

    return fields


def serialize_fields(fields: Iterable[TaggedField]) -> bytes:
    return b"".join(field.encode() for field in fields)


def serialize_etching(spec: EtchingSpec) -> bytes:
    """Serialize an etching into its Runestone payload bytes."""

    payload = serialize_fields(build_fields(spec))
    logger.debug("Serialized runestone for %s (%d bytes)", spec.name, len(payload))
    return payload


def parse_fields(data: bytes) -> List[TaggedField]:
    """Parse a payload into its ordered fields, keeping unknown and repeated tags."""

    fields: List[TaggedField] = []
    offset = 0
    while offset < len(data):
        field_offset = offset
        try:
            tag, consumed = varint.decode(data, offset)
            offset += consumed
        except varint.MalformedVarInt as exc:
            raise TruncatedPayload(f"payload truncated inside tag at offset {field_offset}") from exc
        if offset >= len(data):
            raise TruncatedPayload(
                f"payload ends after tag {tag} at offset {field_offset} with no value"
            )
        try:
            value, consumed = varint.decode(data, offset)
        except varint.MalformedVarInt as exc:
            raise TruncatedPayload(
                f"payload truncated inside value for tag {tag} at offset {offset}"
            ) from exc
        offset += consumed
        fields.append(TaggedField(tag, value))
    return fields


def group_fields(fields: Sequence[TaggedField]) -> Dict[int, List[int]]:
    grouped: Dict[int, List[int]] = {}
    for field in fields:
        grouped.setdefault(int(field.tag), []).append(field.value)
    return grouped


def parse_payload(data: bytes) -> Dict[int, List[int]]:
    """Parse a payload into ``tag -> [values...]`` in first-seen tag order."""

    grouped = group_fields(parse_fields(data))
    unknown = [tag for tag in grouped if tag not in _KNOWN_TAGS]
    if unknown:
        logger.debug("Preserving unknown runestone tags: %s", unknown)
    return grouped


def _first(mapping: Mapping[int, Sequence[int]], tag: Tag) -> int | None:
    values = mapping.get(int(tag))
    return values[0] if values else None


def etching_from_fields(mapping: Mapping[int, Sequence[int]]) -> EtchingSpec:
    """Rebuild an :class:`EtchingSpec` from parsed payload fields.

    Only the first value of each known tag is used. The display name is
    reconstructed from the rune integer and the spacer mask.
    The rebuilt spec is validated, so out-of-range values decoded from the
    wire raise :class:`InvalidEtching`.
    """

    flags = Flag(_first(mapping, FLAGS_TAG) or 0)
    if not flags & Flag.ETCHING:
        raise InvalidEtching("payload does not carry the etching flag")

    rune_value = _first(mapping, Tag.RUNE)
    if rune_value is None:
        raise InvalidEtching("payload does not carry a rune name")

    spacers = _first(mapping, Tag.SPACERS) or 0
    name = apply_spacers(decode_name(rune_value), spacers)

    symbol_value = _first(mapping, Tag.SYMBOL)
    symbol = None
    if symbol_value is not None:
        try:
            symbol = chr(symbol_value)
        except (ValueError, OverflowError) as exc:
            raise InvalidEtching(f"symbol {symbol_value:#x} is not a Unicode code point") from exc

    terms = None
    if flags & Flag.TERMS:
        term_values = {attribute: _first(mapping, tag) for tag, attribute in _TERM_FIELDS}
        if term_values["amount"] is None or term_values["cap"] is None:
            raise InvalidEtching("mint terms require both amount and cap")
        terms = MintTerms(**term_values)

    mint_value = _first(mapping, Tag.MINT)
    spec = EtchingSpec(
        name=name,
        symbol=symbol,
        divisibility=_first(mapping, Tag.DIVISIBILITY) or 0,
        premine=_first(mapping, Tag.PREMINE) or 0,
        terms=terms,
        turbo=bool(flags & Flag.TURBO),
        mint=MintReference.unpack(mint_value) if mint_value is not None else None,
        pointer=_first(mapping, Tag.POINTER),
    )
    spec.validate()
    return spec


def _format_units(value: int, divisibility: int) -> str:
    if divisibility <= 0:
        return str(value)
    whole, fraction = divmod(value, 10**divisibility)
    return f"{whole}.{fraction:0{divisibility}d}"


def describe_etching(spec: EtchingSpec) -> str:
    """Render a human-readable summary of an etching."""

    symbol = spec.symbol or ""
    lines = [
        f"Rune Name: {spec.name}",
        f"Symbol: {symbol}",
        f"Divisibility: {spec.divisibility}",
    ]
    if spec.premine:
        lines.append(f"Premine: {_format_units(spec.premine, spec.divisibility)} {symbol}".rstrip())

    if spec.terms is not None:
        max_supply = spec.terms.amount * spec.terms.cap
        lines.append("Mintable: Yes")
        lines.append(f"Amount Per Mint: {spec.terms.amount} {symbol}".rstrip())
        lines.append(f"Max Mints: {spec.terms.cap}")
        lines.append(f"Maximum Supply: {max_supply} {symbol}".rstrip())
        if spec.terms.height_start is not None or spec.terms.height_end is not None:
            start = spec.terms.height_start if spec.terms.height_start is not None else "-"
            end = spec.terms.height_end if spec.terms.height_end is not None else "-"
            lines.append(f"Mint Heights: {start} -> {end}")
    else:
        lines.append("Mintable: No")
    if spec.turbo:
        lines.append("Turbo: Yes")
    return "\n".join(lines)
