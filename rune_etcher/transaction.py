"""Reveal transaction templates, segwit addresses and size estimation.

The etcher never signs anything itself. It assembles an unsigned template
describing inputs and outputs, estimates its virtual size so fees can be
computed before signing, and hands the template to the external signer.

Address handling implements BIP173 (bech32) and BIP350 (bech32m) for witness
programs only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .model import Network

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

DEFAULT_VERSION = 2
# Opt in to replace-by-fee so a stuck reveal can be bumped.
RBF_SEQUENCE = 0xFFFFFFFD

TAPROOT_KEYPATH_WITNESS = 1 + 1 + 64
P2WPKH_WITNESS = 1 + 1 + 72 + 1 + 33
SEGWIT_MARKER_AND_FLAG = 2


class AddressError(ValueError):
    """Raised when an address cannot be decoded for the selected network."""


def bech32_polymod(values: list[int]) -> int:
    """Compute bech32 checksum polymod."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32 checksum."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def _convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    """Convert between bit groups, returning ``None`` on invalid padding."""

    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    """Encode a witness program as bech32 (v0) or bech32m (v1+)."""

    if not 0 <= witver <= 16:
        raise AddressError(f"witness version must be 0-16, got {witver}")
    data = _convertbits(witprog, 8, 5)
    if data is None:  # pragma: no cover - 8-bit input always converts
        raise AddressError("failed to convert witness program to 5-bit groups")
    combined = [witver] + data
    const = BECH32M_CONST if witver >= 1 else BECH32_CONST
    checksum = _create_checksum(hrp, combined, const)
    return hrp + "1" + "".join(CHARSET[d] for d in combined + checksum)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """Return ``(witness_version, witness_program)`` for ``address``."""

    if address.lower() != address and address.upper() != address:
        raise AddressError("address mixes upper and lower case")
    lowered = address.lower()
    separator = lowered.rfind("1")
    if separator < 1 or separator + 7 > len(lowered) or len(lowered) > 90:
        raise AddressError(f"malformed bech32 address: {address}")
    if lowered[:separator] != hrp:
        raise AddressError(
            f"address prefix {lowered[:separator]!r} does not match network prefix {hrp!r}"
        )

    data: list[int] = []
    for char in lowered[separator + 1 :]:
        position = CHARSET.find(char)
        if position < 0:
            raise AddressError(f"invalid bech32 character {char!r} in {address}")
        data.append(position)

    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise AddressError(f"bad checksum in address {address}")

    witver = data[0]
    program = _convertbits(data[1:-6], 5, 8, pad=False)
    if program is None or not 2 <= len(program) <= 40 or witver > 16:
        raise AddressError(f"invalid witness program in {address}")
    if witver == 0 and len(program) not in (20, 32):
        raise AddressError(f"invalid v0 witness program length {len(program)}")
    if (witver == 0) != (const == BECH32_CONST):
        raise AddressError(f"checksum variant does not match witness version {witver}")
    return witver, bytes(program)


def witness_script(witver: int, program: bytes) -> bytes:
    opcode = 0x00 if witver == 0 else 0x50 + witver
    return bytes([opcode, len(program)]) + program


def address_to_script(address: str, network: Network) -> bytes:
    """Return the scriptPubKey paying ``address`` on ``network``."""

    witver, program = decode_segwit_address(network.hrp, address)
    return witness_script(witver, program)


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a Bitcoin compact size."""
    if n < 253:
        return bytes([n])
    elif n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    elif n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    else:
        return b"\xff" + n.to_bytes(8, "little")


def estimated_witness_size(script_pubkey: bytes) -> int:
    """Return the witness bytes needed to spend ``script_pubkey`` by key path."""

    if len(script_pubkey) == 34 and script_pubkey[:2] == b"\x51\x20":
        return TAPROOT_KEYPATH_WITNESS
    if len(script_pubkey) == 22 and script_pubkey[:2] == b"\x00\x14":
        return P2WPKH_WITNESS
    raise AddressError(
        f"cannot estimate witness size for script {script_pubkey.hex()}; "
        "commit destinations must be P2TR or P2WPKH"
    )


@dataclass(frozen=True)
class TxInput:
    txid: str
    vout: int
    value: int
    script_pubkey: bytes
    sequence: int = RBF_SEQUENCE

    def serialize(self) -> bytes:
        return (
            bytes.fromhex(self.txid)[::-1]
            + self.vout.to_bytes(4, "little")
            + ser_compact_size(0)
            + self.sequence.to_bytes(4, "little")
        )


@dataclass(frozen=True)
class TxOutput:
    value: int
    script_pubkey: bytes
    label: str = ""
    address: Optional[str] = None

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + ser_compact_size(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class RevealTransaction:
    """Unsigned reveal transaction handed to the signer."""

    network: Network
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    version: int = DEFAULT_VERSION
    locktime: int = 0

    def serialize(self) -> bytes:
        """Return the unsigned (witness-free) serialization."""

        return (
            self.version.to_bytes(4, "little")
            + ser_compact_size(len(self.inputs))
            + b"".join(txin.serialize() for txin in self.inputs)
            + ser_compact_size(len(self.outputs))
            + b"".join(txout.serialize() for txout in self.outputs)
            + self.locktime.to_bytes(4, "little")
        )

    def estimate_vsize(self) -> int:
        """Return the BIP141 virtual size once every input carries its witness."""

        base_size = len(self.serialize())
        witness_size = sum(estimated_witness_size(txin.script_pubkey) for txin in self.inputs)
        total_size = base_size + SEGWIT_MARKER_AND_FLAG + witness_size
        weight = base_size * 3 + total_size
        return math.ceil(weight / 4)

    def output_total(self) -> int:
        return sum(txout.value for txout in self.outputs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network.value,
            "version": self.version,
            "locktime": self.locktime,
            "inputs": [
                {
                    "txid": txin.txid,
                    "vout": txin.vout,
                    "value": txin.value,
                    "script_pubkey": txin.script_pubkey.hex(),
                    "sequence": txin.sequence,
                }
                for txin in self.inputs
            ],
            "outputs": [
                {
                    "label": txout.label,
                    "value": txout.value,
                    "script_pubkey": txout.script_pubkey.hex(),
                    "address": txout.address,
                }
                for txout in self.outputs
            ],
            "unsigned_hex": self.serialize().hex(),
        }
