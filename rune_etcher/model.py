"""Domain models for rune etching.

These containers describe what the caller wants to etch, what the data
provider reports about the commit destination, and what a finished reveal
produced. Codec and orchestration modules exchange these types rather than
loose dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .names import MAX_NAME_LENGTH, InvalidNameCharacter, encode_name

MAX_DIVISIBILITY = 18

# Outputs at or below this value are uneconomical to spend and are refused.
DUST_THRESHOLD = 546
MIN_SERVICE_FEE = 546
MAX_SERVICE_FEE = 100_000
SERVICE_FEE_BPS = 1_000


class InvalidEtching(ValueError):
    """Raised when etching parameters fall outside protocol bounds."""


class Network(Enum):
    """Closed set of networks the etcher can target."""

    MAIN = "main"
    TEST = "test"
    REGTEST = "regtest"

    @property
    def hrp(self) -> str:
        return _HRPS[self]

    @classmethod
    def parse(cls, raw: "str | Network") -> "Network":
        if isinstance(raw, Network):
            return raw
        normalized = str(raw).strip().lower()
        normalized = _NETWORK_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown network {raw!r}; expected one of: {choices}") from exc


_HRPS = {Network.MAIN: "bc", Network.TEST: "tb", Network.REGTEST: "bcrt"}
_NETWORK_ALIASES = {"mainnet": "main", "bitcoin": "main", "testnet": "test"}


def _require_non_negative(label: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEtching(f"{label} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidEtching(f"{label} must be non-negative, got {value}")


@dataclass(frozen=True)
class MintTerms:
    """Open-mint terms attached to an etching."""

    amount: int
    cap: int
    height_start: Optional[int] = None
    height_end: Optional[int] = None
    offset_start: Optional[int] = None
    offset_end: Optional[int] = None

    def validate(self) -> None:
        _require_non_negative("terms.amount", self.amount)
        _require_non_negative("terms.cap", self.cap)
        for label in ("height_start", "height_end", "offset_start", "offset_end"):
            value = getattr(self, label)
            if value is not None:
                _require_non_negative(f"terms.{label}", value)


@dataclass(frozen=True)
class MintReference:
    """Reference to an existing rune by its etching outpoint."""

    txid: str
    vout: int

    def validate(self) -> None:
        try:
            raw = bytes.fromhex(self.txid)
        except ValueError as exc:
            raise InvalidEtching(f"mint txid is not hex: {self.txid!r}") from exc
        if len(raw) != 32:
            raise InvalidEtching(f"mint txid must be 32 bytes, got {len(raw)}")
        if isinstance(self.vout, bool) or not isinstance(self.vout, int) or not 0 <= self.vout <= 0xFF:
            raise InvalidEtching(f"mint vout must fit in one byte, got {self.vout!r}")

    def pack(self) -> int:
        """Return the txid (byte-reversed) shifted left one byte, OR'd with vout."""

        self.validate()
        reversed_txid = bytes.fromhex(self.txid)[::-1]
        return int.from_bytes(reversed_txid, "big") << 8 | self.vout

    @classmethod
    def unpack(cls, value: int) -> "MintReference":
        vout = value & 0xFF
        try:
            txid_le = (value >> 8).to_bytes(32, "big")
        except OverflowError as exc:
            raise InvalidEtching(f"mint reference {value:#x} exceeds 264 bits") from exc
        return cls(txid=txid_le[::-1].hex(), vout=vout)


@dataclass(frozen=True)
class EtchingSpec:
    """Parameters for a single rune etching.

    ``name`` is the display form and may contain spacers. ``premine`` and the
    term amounts are plain Python integers and therefore unbounded.
    """

    name: str
    symbol: Optional[str] = None
    divisibility: int = 0
    premine: int = 0
    terms: Optional[MintTerms] = None
    turbo: bool = False
    mint: Optional[MintReference] = None
    pointer: Optional[int] = None

    def validate(self) -> None:
        if len(self.name) > MAX_NAME_LENGTH:
            raise InvalidEtching(
                f"rune name is {len(self.name)} characters; the maximum is {MAX_NAME_LENGTH}"
            )
        # Raises InvalidNameCharacter for anything outside A-Z and the spacer.
        encode_name(self.name)
        if self.name != self.name.upper():
            raise InvalidNameCharacter(f"rune name must be uppercase: {self.name!r}")

        if self.symbol is not None and len(self.symbol) != 1:
            raise InvalidEtching(f"symbol must be a single character, got {self.symbol!r}")

        if isinstance(self.divisibility, bool) or not isinstance(self.divisibility, int):
            raise InvalidEtching(f"divisibility must be an integer, got {self.divisibility!r}")
        if not 0 <= self.divisibility <= MAX_DIVISIBILITY:
            raise InvalidEtching(
                f"divisibility must be between 0 and {MAX_DIVISIBILITY}, got {self.divisibility}"
            )

        _require_non_negative("premine", self.premine)
        if self.terms is not None:
            self.terms.validate()
        if self.mint is not None:
            self.mint.validate()
        if self.pointer is not None:
            _require_non_negative("pointer", self.pointer)


@dataclass(frozen=True)
class Utxo:
    """Snapshot of an unspent output as reported by a data provider."""

    txid: str
    vout: int
    value: int
    confirmed: bool = False


@dataclass(frozen=True)
class FundingOutpoint:
    """The funding output selected for the reveal transaction."""

    txid: str
    vout: int
    value: int

    @classmethod
    def from_utxo(cls, utxo: Utxo) -> "FundingOutpoint":
        return cls(txid=utxo.txid, vout=utxo.vout, value=utxo.value)


@dataclass
class CommitState:
    """Commit destination and funding for one etching run.

    ``key_handle`` belongs to the signer and is only ever passed back to it.
    """

    commit_address: str
    key_handle: Any = field(repr=False)
    network: Network = Network.MAIN
    funding: Optional[FundingOutpoint] = None


@dataclass(frozen=True)
class RevealResult:
    """Terminal artifact of a successful etching run."""

    transaction_id: str
    total_fee: int
    miner_fee: int
    service_fee: int
    recipient_value: int

    def summary(self) -> dict[str, Any]:
        return {
            "txid": self.transaction_id,
            "total_fee": self.total_fee,
            "miner_fee": self.miner_fee,
            "service_fee": self.service_fee,
            "recipient_value": self.recipient_value,
        }
