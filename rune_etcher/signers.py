"""Signer integrations.

The signer owns every private key. The etcher asks it for a fresh commit
destination, receives an opaque key handle alongside the address, and later
hands the handle back together with an unsigned reveal template. Nothing in
this package derives, inspects or stores key material.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from .model import Network
from .rpc_client import BitcoinRPCClient, RPCError, RPCTimeout, RPCTransportError, format_rpc_hint
from .transaction import RevealTransaction

logger = logging.getLogger(__name__)

SATS_PER_COIN = Decimal(100_000_000)


class SignerError(RuntimeError):
    """Raised when the signer cannot produce a key or a signature."""


class SignerTimeout(SignerError):
    """Raised when the signer did not answer in time; safe to retry."""


@dataclass(frozen=True)
class KeyGrant:
    """A commit destination plus the signer's opaque handle for its key."""

    address: str
    key_handle: Any = field(repr=False)


@dataclass(frozen=True)
class SignedTransaction:
    raw_hex: str


class Signer(Protocol):
    def request_key(self, network: Network) -> KeyGrant:
        ...

    def sign(self, template: RevealTransaction, key_handle: Any) -> SignedTransaction:
        ...


class NodeWalletSigner:
    """Signer backed by a node wallet reachable over JSON-RPC.

    Commit destinations are fresh bech32m (taproot) wallet addresses; the key
    handle is simply the address, which the wallet resolves internally.
    """

    def __init__(self, rpc: BitcoinRPCClient, *, address_type: str = "bech32m") -> None:
        self.rpc = rpc
        self.address_type = address_type

    def request_key(self, network: Network) -> KeyGrant:
        try:
            address = self.rpc.getnewaddress(label="rune-commit", address_type=self.address_type)
        except RPCTimeout as exc:
            raise SignerTimeout(str(exc)) from exc
        except (RPCError, RPCTransportError) as exc:
            hint = format_rpc_hint(exc) if isinstance(exc, RPCError) else None
            hint_suffix = f" ({hint})" if hint else ""
            raise SignerError(f"wallet could not issue a commit address: {exc}{hint_suffix}") from exc
        if not address:
            raise SignerError("wallet returned an empty commit address")
        logger.info("Wallet issued commit address", extra={"network": network.value})
        return KeyGrant(address=address, key_handle=address)

    def sign(self, template: RevealTransaction, key_handle: Any) -> SignedTransaction:
        prevtxs = [
            {
                "txid": txin.txid,
                "vout": txin.vout,
                "scriptPubKey": txin.script_pubkey.hex(),
                "amount": float(Decimal(txin.value) / SATS_PER_COIN),
            }
            for txin in template.inputs
        ]
        try:
            signed = self.rpc.signrawtransactionwithwallet(template.serialize().hex(), prevtxs)
        except RPCTimeout as exc:
            raise SignerTimeout(str(exc)) from exc
        except (RPCError, RPCTransportError) as exc:
            raise SignerError(f"wallet failed to sign the reveal: {exc}") from exc

        if not signed or not signed.get("complete"):
            errors = (signed or {}).get("errors") or []
            details = "; ".join(str(item.get("error", item)) for item in errors) or "incomplete signature set"
            raise SignerError(f"wallet could not fully sign the reveal for {key_handle}: {details}")
        return SignedTransaction(raw_hex=signed["hex"])
