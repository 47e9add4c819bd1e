"""Typed JSON-RPC client for Bitcoin Core compatible nodes.

The client backs both the node-wallet signer and the node data provider.
Configuration comes from :func:`rune_etcher.config.load_rpc_config` so CLI
commands and library callers share one connection surface. Each helper maps
directly to a node RPC method and returns the parsed ``result``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import requests
from requests import RequestException, Response

from .config import RPCConfig

logger = logging.getLogger(__name__)


class RPCError(RuntimeError):
    """Raised when the node responds with an RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RPCTransportError(RuntimeError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RPCTimeout(RPCTransportError):
    """Raised when the node did not answer within the configured timeout."""


# (code, lowercase message fragment, hint); a ``None`` entry matches anything.
_RPC_HINTS = (
    (
        -26,
        "min relay fee not met",
        "The node rejected the reveal because its fee is below the minrelaytxfee policy. "
        "Retry the reveal with a higher --fee-rate.",
    ),
    (-26, "dust", "One of the reveal outputs is below the node's dust limit; fund the commit address with more sats."),
    (
        -25,
        None,
        "The funding output is missing or already spent. Confirm the commit transaction and "
        "check that no other reveal has consumed it.",
    ),
    (None, "missingorspent", "The funding output was already spent by another transaction."),
    (-13, None, "The wallet is locked. Unlock it with walletpassphrase, then retry the command."),
    (-18, None, "The node has no wallet loaded. Load one with loadwallet or set BTC_RPC_WALLET."),
)


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a remediation hint for common node rejections, if one is known."""

    if isinstance(error_obj, RPCError):
        code, message = error_obj.code, error_obj.message
    elif isinstance(error_obj, dict):
        code, message = error_obj.get("code"), str(error_obj.get("message", ""))
    else:
        return None

    lowered = message.lower()
    for hint_code, fragment, hint in _RPC_HINTS:
        if hint_code is not None and hint_code != code:
            continue
        if fragment is not None and fragment not in lowered:
            continue
        return hint
    return None


class BitcoinRPCClient:
    """JSON-RPC client bound to one node (and optionally one wallet).

    Build the :class:`RPCConfig` with :func:`rune_etcher.config.load_rpc_config`
    so ``BTC_RPC_*`` variables and the ``rpc`` section of
    ``~/.rune-etcher.yaml`` are honoured.
    """

    def __init__(self, config: RPCConfig) -> None:
        self.config = config
        self._session = requests.Session()
        self.url = config.base_url
        if config.wallet:
            self.url = f"{self.url}/wallet/{config.wallet}"

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Invoke ``method`` and return its ``result`` member."""

        body = json.dumps(
            {"jsonrpc": "1.0", "id": uuid.uuid4().hex, "method": method, "params": params or []}
        )
        logger.debug("RPC call %s", method, extra={"rpc_url": self.config.base_url})
        try:
            response = self._session.post(
                self.url,
                data=body,
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.config.timeout,
            )
        except requests.Timeout as exc:
            logger.warning("RPC call %s timed out after %ss", method, self.config.timeout)
            raise RPCTimeout(f"RPC call {method} timed out after {self.config.timeout}s") from exc
        except RequestException as exc:
            logger.error(
                "RPC connection to %s failed: %s",
                self.config.base_url,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                f"Could not reach the node at {self.config.base_url}. Check that it is running and "
                "that BTC_RPC_* variables (or ~/.rune-etcher.yaml) point at the right host and port."
            ) from exc

        # Bitcoin Core reports JSON-RPC errors with HTTP 500 and a JSON body.
        try:
            decoded = response.json()
        except ValueError as exc:
            self._raise_for_status(response)
            logger.debug("Unparsable RPC response for %s: %s", method, response.text, exc_info=True)
            raise RPCTransportError(f"node returned malformed JSON for {method}") from exc

        if not isinstance(decoded, dict):
            self._raise_for_status(response)
            raise RPCTransportError(f"node returned an unexpected payload for {method}")
        error = decoded.get("error")
        if error:
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        self._raise_for_status(response)
        return decoded.get("result")

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        logger.error("RPC HTTP %s from %s", response.status_code, response.url)
        if response.status_code == 401:
            raise RPCTransportError(
                "The node refused the credentials (HTTP 401); check BTC_RPC_USER and BTC_RPC_PASSWORD "
                "or the rpc section of ~/.rune-etcher.yaml.",
                status_code=401,
            )
        raise RPCTransportError(
            f"node answered HTTP {response.status_code}; check the endpoint and wallet name",
            status_code=response.status_code,
        )

    def listunspent(
        self,
        minconf: int = 0,
        maxconf: int = 9999999,
        addresses: Optional[list[str]] = None,
    ) -> list[Dict[str, Any]]:
        params: list[Any] = [minconf, maxconf]
        if addresses is not None:
            params.append(addresses)
        return self.call("listunspent", params)

    def getnewaddress(self, label: str = "", address_type: str | None = None) -> str:
        params: list[Any] = [label]
        if address_type is not None:
            params.append(address_type)
        return self.call("getnewaddress", params)

    def estimatesmartfee(self, conf_target: int, estimate_mode: str | None = None) -> Dict[str, Any]:
        params: list[Any] = [conf_target] if estimate_mode is None else [conf_target, estimate_mode]
        return self.call("estimatesmartfee", params)

    def signrawtransactionwithwallet(
        self, raw_tx: str, prevtxs: list[Dict[str, Any]] | None = None
    ) -> Dict[str, Any]:
        return self.call("signrawtransactionwithwallet", [raw_tx] if prevtxs is None else [raw_tx, prevtxs])

    def sendrawtransaction(self, raw_tx: str) -> str:
        return self.call("sendrawtransaction", [raw_tx])
