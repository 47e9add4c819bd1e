from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from rune_etcher.config import RPCConfig
from rune_etcher.rpc_client import (
    BitcoinRPCClient,
    RPCError,
    RPCTimeout,
    RPCTransportError,
    format_rpc_hint,
)


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self.ok = status_code < 400
        self.url = "http://127.0.0.1:18443"
        self._body = body
        self.text = "" if body is None else json.dumps(body)

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("empty body")
        return self._body


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.posts: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.posts.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def _client(session: FakeSession, wallet: str | None = None) -> BitcoinRPCClient:
    client = BitcoinRPCClient(RPCConfig(user="u", password="p", port=18443, wallet=wallet, timeout=5))
    client._session = session
    return client


def test_call_returns_result_and_targets_wallet() -> None:
    session = FakeSession(FakeResponse(200, {"result": "bcrt1pnew", "error": None, "id": "1"}))
    client = _client(session, wallet="etcher")

    assert client.getnewaddress(label="rune-commit", address_type="bech32m") == "bcrt1pnew"

    request = session.posts[0]
    assert request["url"] == "http://127.0.0.1:18443/wallet/etcher"
    assert request["timeout"] == 5
    assert json.loads(request["data"])["params"] == ["rune-commit", "bech32m"]


def test_rpc_error_body_is_raised_before_http_status() -> None:
    body = {"result": None, "error": {"code": -26, "message": "min relay fee not met"}}
    client = _client(FakeSession(FakeResponse(500, body)))

    with pytest.raises(RPCError) as excinfo:
        client.sendrawtransaction("0200")
    assert excinfo.value.code == -26
    assert "--fee-rate" in (format_rpc_hint(excinfo.value) or "")


def test_unauthorized_is_a_transport_error() -> None:
    client = _client(FakeSession(FakeResponse(401)))

    with pytest.raises(RPCTransportError) as excinfo:
        client.estimatesmartfee(6)
    assert excinfo.value.status_code == 401


def test_timeout_is_distinct_from_connection_failure() -> None:
    with pytest.raises(RPCTimeout):
        _client(FakeSession(error=requests.Timeout("slow"))).listunspent()

    with pytest.raises(RPCTransportError) as excinfo:
        _client(FakeSession(error=requests.ConnectionError("refused"))).listunspent()
    assert not isinstance(excinfo.value, RPCTimeout)


def test_hint_for_unknown_error_is_none() -> None:
    assert format_rpc_hint({"code": -1, "message": "something else"}) is None
    assert format_rpc_hint(None) is None
