"""Rune name encoding and spacer handling.

Names are restricted to ``A``-``Z`` plus the decorative spacer glyph ``•``.
The integer identity of a rune ignores spacers entirely; spacers are carried
separately as a bitmask so that the display form can be rebuilt.
"""

from __future__ import annotations

from typing import List

SPACER = "•"
MAX_NAME_LENGTH = 28
ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
RADIX = len(ALPHABET)


class InvalidNameCharacter(ValueError):
    """Raised when a rune name contains characters outside ``A``-``Z``."""


def strip_spacers(name: str) -> str:
    """Remove spacer glyphs and uppercase the remaining characters."""

    return name.replace(SPACER, "").upper()


def encode_name(name: str) -> int:
    """Map a rune name to its base-26 integer (``A`` = 0 ... ``Z`` = 25).

    Characters are read most-significant first. Spacers are ignored.
    """

    clean = strip_spacers(name)
    if not clean:
        raise InvalidNameCharacter("rune name must contain at least one letter")

    value = 0
    for position, char in enumerate(clean):
        digit = ALPHABET.find(char)
        if digit < 0:
            raise InvalidNameCharacter(
                f"invalid character {char!r} at position {position} in rune name {name!r}"
            )
        value = value * RADIX + digit
    return value


def decode_name(value: int, length: int | None = None) -> str:
    """Return the letters for an encoded rune name.

    Positional base-26 cannot represent leading ``A`` digits, so the shortest
    spelling is returned unless ``length`` is given, in which case the result
    is left-padded with ``A`` to that many letters.
    """

    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"rune name value must be a non-negative integer, got {value!r}")

    letters: List[str] = []
    remaining = value
    while True:
        remaining, digit = divmod(remaining, RADIX)
        letters.append(ALPHABET[digit])
        if remaining == 0:
            break
    letters.reverse()
    decoded = "".join(letters)

    if length is not None:
        if length < len(decoded):
            raise ValueError(
                f"value {value} needs {len(decoded)} letters; cannot fit in {length}"
            )
        decoded = decoded.rjust(length, ALPHABET[0])
    return decoded


def compute_spacers(display_name: str) -> int:
    """Return the spacer bitmask for a display name.

    Bit ``i`` is set when the spacer occupies character position ``i`` of the
    display string. The trailing position is never flagged.
    """

    spacers = 0
    for index, char in enumerate(display_name[:-1]):
        if char == SPACER:
            spacers |= 1 << index
    return spacers


def apply_spacers(name: str, spacers: int) -> str:
    """Rebuild a display name from stripped letters and a spacer bitmask."""

    clean = strip_spacers(name)
    letters = iter(clean)
    remaining = len(clean)
    output: List[str] = []
    index = 0
    while remaining:
        if spacers >> index & 1:
            output.append(SPACER)
        else:
            output.append(next(letters))
            remaining -= 1
        index += 1
    return "".join(output)
