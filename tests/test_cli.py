from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from rune_etcher import cli, varint
from rune_etcher.model import Network, Utxo
from rune_etcher.signers import KeyGrant, SignedTransaction
from rune_etcher.transaction import RevealTransaction, encode_segwit_address

MY_RUNE_PAYLOAD_HEX = "0003" "0102" "0204" "0324" "04ced4aec900" "05e807" "07e400" "060a"
MY_RUNE_ARGS = [
    "MY•RUNE",
    "--symbol",
    "$",
    "--divisibility",
    "2",
    "--premine",
    "1000",
    "--amount",
    "100",
    "--cap",
    "10",
]

COMMIT_ADDRESS = encode_segwit_address("bcrt", 1, bytes([7]) * 32)
SERVICE_ADDRESS = encode_segwit_address("bcrt", 1, bytes([8]) * 32)
RECIPIENT_ADDRESS = encode_segwit_address("bcrt", 1, bytes([9]) * 32)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("rune_etcher.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setattr("rune_etcher.config._CONFIG_PATH_OVERRIDE", None)


def test_encode_json(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["encode", *MY_RUNE_ARGS, "--json"])

    output = json.loads(capsys.readouterr().out)
    assert output["payload_hex"] == MY_RUNE_PAYLOAD_HEX
    assert output["script_hex"].startswith("6a0063036f72640101")
    assert [field["label"] for field in output["fields"]][:5] == [
        "body",
        "divisibility",
        "spacers",
        "symbol",
        "rune",
    ]


def test_decode_payload_prints_summary(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["decode", MY_RUNE_PAYLOAD_HEX])

    out = capsys.readouterr().out
    assert "rune" in out
    assert "Rune Name: MY•RUNE" in out
    assert "Maximum Supply: 1000 $" in out


def test_decode_script_keeps_unknown_tags(capsys: pytest.CaptureFixture[str]) -> None:
    payload_len = len(MY_RUNE_PAYLOAD_HEX) // 2 + 2
    script_hex = "6a0063036f72640101" + f"{payload_len:02x}" + MY_RUNE_PAYLOAD_HEX + "6307" + "0068"

    cli.main(["decode", script_hex, "--script", "--json"])

    output = json.loads(capsys.readouterr().out)
    assert output["fields"][-1] == {"tag": 99, "label": "tag_99", "value": "7"}
    assert output["summary"].startswith("Rune Name: MY•RUNE")


def test_decode_rejects_symbol_outside_unicode(capsys: pytest.CaptureFixture[str]) -> None:
    payload = bytes([0x00, 0x01, 0x03]) + varint.encode(0x110000) + bytes([0x04, 0x05])

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["decode", payload.hex()])

    assert excinfo.value.code == 1
    assert "not a Unicode code point" in capsys.readouterr().err


def test_decode_truncated_payload_exits_with_error(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["decode", "04"])

    assert excinfo.value.code == 1
    assert "error:" in capsys.readouterr().err


def test_describe(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["describe", *MY_RUNE_ARGS])

    assert capsys.readouterr().out.splitlines()[:4] == [
        "Rune Name: MY•RUNE",
        "Symbol: $",
        "Divisibility: 2",
        "Premine: 10.00 $",
    ]


@pytest.mark.parametrize(
    "argv",
    [
        ["describe", "RUNE", "--amount", "5"],
        ["describe", "RUNE", "--height-start", "840000"],
        ["describe", "RUNE", "--divisibility", "40"],
        ["describe", "RUNE!"],
        ["encode", "RUNE", "--mint", "nothex"],
    ],
)
def test_invalid_etching_arguments_exit_with_error(argv: list[str], capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)

    assert excinfo.value.code == 1
    assert capsys.readouterr().err.startswith("error:")


class StubSigner:
    def __init__(self) -> None:
        self.templates: list[RevealTransaction] = []

    def request_key(self, network: Network) -> KeyGrant:
        return KeyGrant(address=COMMIT_ADDRESS, key_handle=COMMIT_ADDRESS)

    def sign(self, template: RevealTransaction, key_handle: Any) -> SignedTransaction:
        self.templates.append(template)
        return SignedTransaction(raw_hex="02000000feed")


class StubProvider:
    def __init__(self) -> None:
        self.polls = 0
        self.broadcasts: list[str] = []

    def list_unspent(self, address: str, network: Network) -> list[Utxo]:
        self.polls += 1
        if self.polls < 2:
            return []
        return [Utxo(txid="ab" * 32, vout=0, value=20_000, confirmed=True)]

    def broadcast(self, raw_tx_hex: str) -> str:
        self.broadcasts.append(raw_tx_hex)
        return "cd" * 32

    def fee_estimates(self) -> dict[str, float]:
        return {"6": 5.0}


def test_etch_runs_commit_and_reveal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    signer = StubSigner()
    provider = StubProvider()
    monkeypatch.setattr(cli, "NodeWalletSigner", lambda rpc: signer)
    monkeypatch.setattr(cli, "_provider_for", lambda args, config, rpc: provider)
    monkeypatch.setenv("RUNE_ETCHER_NETWORK", "regtest")
    monkeypatch.setenv("RUNE_ETCHER_SERVICE_FEE_ADDRESS", SERVICE_ADDRESS)
    monkeypatch.setenv("BTC_RPC_USER", "user")
    monkeypatch.setenv("BTC_RPC_PASSWORD", "pass")
    monkeypatch.delenv("RUNE_ETCHER_MIN_FEE_RATE_SATVB", raising=False)
    receipt_path = tmp_path / "receipts" / "etch.json"

    cli.main(
        [
            "etch",
            *MY_RUNE_ARGS,
            "--recipient",
            RECIPIENT_ADDRESS,
            "--poll-interval",
            "0",
            "--max-polls",
            "3",
            "--receipt",
            str(receipt_path),
        ]
    )

    out = capsys.readouterr().out
    assert COMMIT_ADDRESS in out
    assert "Reveal broadcast: " + "cd" * 32 in out
    assert provider.polls == 2
    assert provider.broadcasts == ["02000000feed"]

    receipt = json.loads(receipt_path.read_text())
    assert receipt["payload_hex"] == MY_RUNE_PAYLOAD_HEX
    assert receipt["network"] == "regtest"
    assert receipt["fee_rate_sat_vb"] == 5.0
    assert receipt["funding"] == {"txid": "ab" * 32, "vout": 0, "value": 20_000}
    assert receipt["reveal"]["txid"] == "cd" * 32
    reveal = receipt["reveal"]
    assert reveal["recipient_value"] == 20_000 - reveal["miner_fee"] - reveal["service_fee"]
    assert receipt["unsigned_reveal"]["outputs"][1]["address"] == SERVICE_ADDRESS


def test_etch_gives_up_after_max_polls(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    provider = StubProvider()
    provider.polls = -100
    monkeypatch.setattr(cli, "NodeWalletSigner", lambda rpc: StubSigner())
    monkeypatch.setattr(cli, "_provider_for", lambda args, config, rpc: provider)
    monkeypatch.setenv("RUNE_ETCHER_NETWORK", "regtest")
    monkeypatch.setenv("RUNE_ETCHER_SERVICE_FEE_ADDRESS", SERVICE_ADDRESS)
    monkeypatch.setenv("BTC_RPC_USER", "user")
    monkeypatch.setenv("BTC_RPC_PASSWORD", "pass")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            ["etch", "RUNE", "--recipient", RECIPIENT_ADDRESS, "--poll-interval", "0", "--max-polls", "2"]
        )

    assert excinfo.value.code == 1
    assert "gave up after 2 funding checks" in capsys.readouterr().err
