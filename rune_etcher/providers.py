"""Blockchain data providers: unspent-output lookup, broadcast and fee estimates.

The etcher only ever reads snapshots from a provider; chain state changes only
through :meth:`DataProvider.broadcast`. Two implementations are shipped: an
Esplora REST client (Blockstream-compatible) and an adapter over a node's
JSON-RPC interface.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Protocol

import requests
from requests import RequestException

from .model import Network, Utxo
from .rpc_client import BitcoinRPCClient, RPCError, RPCTimeout, RPCTransportError, format_rpc_hint

logger = logging.getLogger(__name__)

SATS_PER_COIN = Decimal(100_000_000)
DEFAULT_LOOKUP_TIMEOUT = 10.0
DEFAULT_BROADCAST_TIMEOUT = 15.0
# Node RPC codes that mean the transaction itself was refused.
REJECTION_CODES = {-25, -26, -27}


class ProviderError(RuntimeError):
    """Raised when the data provider cannot answer a request."""


class ProviderTimeout(ProviderError):
    """Raised when a provider request exceeds its timeout; safe to retry."""


class ProviderRejected(ProviderError):
    """Raised when the provider definitively refuses a broadcast."""


class DataProvider(Protocol):
    def list_unspent(self, address: str, network: Network) -> List[Utxo]:
        ...

    def broadcast(self, raw_tx_hex: str) -> str:
        ...

    def fee_estimates(self) -> Dict[str, float]:
        ...


class EsploraProvider:
    """Client for Esplora-style REST APIs such as blockstream.info."""

    def __init__(
        self,
        base_url: str,
        *,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        broadcast_timeout: float = DEFAULT_BROADCAST_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.lookup_timeout = lookup_timeout
        self.broadcast_timeout = broadcast_timeout
        self.session = session or requests.Session()

    def _get(self, path: str) -> Any:
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.get(url, timeout=self.lookup_timeout)
        except requests.Timeout as exc:
            raise ProviderTimeout(f"GET {url} timed out after {self.lookup_timeout}s") from exc
        except RequestException as exc:
            raise ProviderError(f"GET {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise ProviderError(f"GET {url} returned HTTP {response.status_code}: {response.text.strip()}")
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"GET {url} returned malformed JSON") from exc

    def list_unspent(self, address: str, network: Network) -> List[Utxo]:
        data = self._get(f"address/{address}/utxo")
        if not isinstance(data, list):
            raise ProviderError(f"unexpected UTXO response for {address}: {data!r}")
        try:
            utxos = [
                Utxo(
                    txid=item["txid"],
                    vout=int(item["vout"]),
                    value=int(item["value"]),
                    confirmed=bool((item.get("status") or {}).get("confirmed", False)),
                )
                for item in data
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderError(f"malformed UTXO entry for {address}: {exc!r}") from exc
        logger.debug(
            "Esplora returned %d UTXO(s)", len(utxos), extra={"address": address, "network": network.value}
        )
        return utxos

    def broadcast(self, raw_tx_hex: str) -> str:
        url = f"{self.base_url}/tx"
        try:
            response = self.session.post(
                url,
                data=raw_tx_hex,
                headers={"Content-Type": "text/plain"},
                timeout=self.broadcast_timeout,
            )
        except requests.Timeout as exc:
            raise ProviderTimeout(f"broadcast timed out after {self.broadcast_timeout}s") from exc
        except RequestException as exc:
            raise ProviderError(f"broadcast to {url} failed: {exc}") from exc

        body = response.text.strip()
        if response.status_code == 400:
            logger.error("Esplora rejected transaction: %s", body)
            raise ProviderRejected(f"transaction rejected: {body}")
        if response.status_code != 200:
            raise ProviderError(f"broadcast returned HTTP {response.status_code}: {body}")
        return body

    def fee_estimates(self) -> Dict[str, float]:
        data = self._get("fee-estimates")
        if not isinstance(data, dict):
            raise ProviderError(f"unexpected fee estimate response: {data!r}")
        return {str(key): float(value) for key, value in data.items()}


def _coin_to_sats(amount: Any) -> int:
    return int((Decimal(str(amount)) * SATS_PER_COIN).to_integral_value())


class NodeRPCProvider:
    """Data provider backed by a node's JSON-RPC interface.

    ``listunspent`` only sees addresses known to the node's wallet, which holds
    for commit addresses issued by :class:`rune_etcher.signers.NodeWalletSigner`.
    """

    def __init__(self, rpc: BitcoinRPCClient, *, conf_target: int = 6) -> None:
        self.rpc = rpc
        self.conf_target = conf_target

    def list_unspent(self, address: str, network: Network) -> List[Utxo]:
        try:
            rows = self.rpc.listunspent(0, 9999999, [address])
        except RPCTimeout as exc:
            raise ProviderTimeout(str(exc)) from exc
        except (RPCError, RPCTransportError) as exc:
            raise ProviderError(f"listunspent failed: {exc}") from exc
        return [
            Utxo(
                txid=row["txid"],
                vout=int(row["vout"]),
                value=_coin_to_sats(row["amount"]),
                confirmed=int(row.get("confirmations", 0) or 0) > 0,
            )
            for row in rows
        ]

    def broadcast(self, raw_tx_hex: str) -> str:
        try:
            return self.rpc.sendrawtransaction(raw_tx_hex)
        except RPCTimeout as exc:
            raise ProviderTimeout(str(exc)) from exc
        except RPCError as exc:
            if exc.code in REJECTION_CODES:
                hint = format_rpc_hint(exc)
                hint_suffix = f"\nHint: {hint}" if hint else ""
                raise ProviderRejected(f"{exc}{hint_suffix}") from exc
            raise ProviderError(f"sendrawtransaction failed: {exc}") from exc
        except RPCTransportError as exc:
            raise ProviderError(str(exc)) from exc

    def fee_estimates(self) -> Dict[str, float]:
        try:
            response = self.rpc.estimatesmartfee(self.conf_target)
        except (RPCError, RPCTransportError) as exc:
            raise ProviderError(f"estimatesmartfee failed: {exc}") from exc
        rate = (response or {}).get("feerate")
        if rate is None:
            return {}
        # BTC/kvB to sat/vB
        return {str(self.conf_target): float(rate) * 1e8 / 1000}
