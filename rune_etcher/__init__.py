"""Rune etching codec and commit/reveal orchestration."""

from .envelope import EnvelopeError, frame, runestone_script, unframe
from .etching import (
    BroadcastRejected,
    EtchingError,
    EtchingOrchestrator,
    EtchingPhase,
    EtchingSettings,
    EtchingStateError,
    InsufficientFunds,
    NetworkTimeout,
    PendingFunding,
    RevealInFlight,
    SignerUnavailable,
)
from .model import (
    CommitState,
    EtchingSpec,
    FundingOutpoint,
    InvalidEtching,
    MintReference,
    MintTerms,
    Network,
    RevealResult,
    Utxo,
)
from .names import InvalidNameCharacter, compute_spacers, decode_name, encode_name
from .runestone import (
    Flag,
    Tag,
    TruncatedPayload,
    describe_etching,
    etching_from_fields,
    parse_payload,
    serialize_etching,
)
from .varint import MalformedVarInt

__all__ = [
    "BroadcastRejected",
    "CommitState",
    "EnvelopeError",
    "EtchingError",
    "EtchingOrchestrator",
    "EtchingPhase",
    "EtchingSettings",
    "EtchingSpec",
    "EtchingStateError",
    "Flag",
    "FundingOutpoint",
    "InsufficientFunds",
    "InvalidEtching",
    "InvalidNameCharacter",
    "MalformedVarInt",
    "MintReference",
    "MintTerms",
    "Network",
    "NetworkTimeout",
    "PendingFunding",
    "RevealInFlight",
    "RevealResult",
    "SignerUnavailable",
    "Tag",
    "TruncatedPayload",
    "Utxo",
    "compute_spacers",
    "decode_name",
    "describe_etching",
    "encode_name",
    "etching_from_fields",
    "frame",
    "parse_payload",
    "runestone_script",
    "serialize_etching",
    "unframe",
]
