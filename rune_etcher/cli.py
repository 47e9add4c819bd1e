"""Command-line interface for the rune etcher.

``encode``, ``decode`` and ``describe`` work offline on Runestone payloads.
``etch`` drives a full commit/reveal run against a node wallet signer and a
data provider, polling the commit address until it is funded.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from .config import (
    ConfigurationError,
    EtcherConfig,
    load_etcher_config,
    load_rpc_config,
    set_default_config_path,
)
from .envelope import EnvelopeError, runestone_script, unframe
from .etching import EtchingError, EtchingOrchestrator, EtchingSettings, PendingFunding
from .fees import format_floors_for_log, select_fee_rate
from .model import EtchingSpec, InvalidEtching, MintReference, MintTerms, Network
from .names import InvalidNameCharacter
from .providers import EsploraProvider, NodeRPCProvider, ProviderError
from .rpc_client import BitcoinRPCClient, RPCError
from .runestone import (
    Flag,
    Tag,
    TaggedField,
    TruncatedPayload,
    build_fields,
    describe_etching,
    etching_from_fields,
    group_fields,
    parse_fields,
    serialize_fields,
)
from .signers import NodeWalletSigner
from .transaction import AddressError
from .varint import MalformedVarInt

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _add_etching_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("name", help="Rune name, A-Z with optional • spacers")
    parser.add_argument("--symbol", help="Single-character currency symbol")
    parser.add_argument("--divisibility", type=int, default=0, help="Decimal places (0-18)")
    parser.add_argument("--premine", type=int, default=0, help="Units allocated to the etcher")
    parser.add_argument("--amount", type=int, help="Units per open mint (enables mint terms)")
    parser.add_argument("--cap", type=int, help="Maximum number of open mints")
    parser.add_argument("--height-start", type=int, help="First block height allowing mints")
    parser.add_argument("--height-end", type=int, help="Block height after which mints stop")
    parser.add_argument("--offset-start", type=int, help="Mint start as an offset from the etching block")
    parser.add_argument("--offset-end", type=int, help="Mint end as an offset from the etching block")
    parser.add_argument("--turbo", action="store_true", help="Opt in to future protocol changes")
    parser.add_argument("--mint", help="Existing rune to mint, as TXID:VOUT")
    parser.add_argument("--pointer", type=int, help="Output index receiving the premine")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rune etching toolkit")
    parser.add_argument("--config", help="Path to a YAML config file (default ~/.rune-etcher.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    encode_parser = subparsers.add_parser(
        "encode", help="Serialize an etching into payload and output-script hex"
    )
    _add_etching_arguments(encode_parser)
    encode_parser.add_argument("--json", dest="as_json", action="store_true", help="Emit JSON")

    decode_parser = subparsers.add_parser(
        "decode", help="Parse a Runestone payload (or envelope script) into its fields"
    )
    decode_parser.add_argument("hex", help="Payload or script hex")
    decode_parser.add_argument(
        "--script",
        action="store_true",
        help="Treat the input as a compiled envelope script rather than a bare payload",
    )
    decode_parser.add_argument("--json", dest="as_json", action="store_true", help="Emit JSON")

    describe_parser = subparsers.add_parser("describe", help="Print a human-readable etching summary")
    _add_etching_arguments(describe_parser)

    etch_parser = subparsers.add_parser(
        "etch", help="Run the commit/reveal flow and broadcast the etching"
    )
    _add_etching_arguments(etch_parser)
    etch_parser.add_argument("--recipient", required=True, help="Address receiving the reveal change")
    etch_parser.add_argument(
        "--network", choices=[network.value for network in Network], help="Override the configured network"
    )
    etch_parser.add_argument(
        "--provider",
        choices=["esplora", "node"],
        default="esplora",
        help="Where to look up UTXOs and broadcast (default: esplora)",
    )
    etch_parser.add_argument("--fee-rate", type=float, help="Explicit fee rate in sat/vB")
    etch_parser.add_argument("--min-fee-rate", type=float, help="Lower bound for the fee rate in sat/vB")
    etch_parser.add_argument("--conf-target", type=int, help="Confirmation target for fee estimates")
    etch_parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Seconds between funding checks",
    )
    etch_parser.add_argument(
        "--max-polls",
        type=int,
        help="Give up after this many funding checks (default: poll until funded)",
    )
    etch_parser.add_argument("--receipt", type=Path, help="Write a JSON receipt to this path")
    return parser


def _parse_mint_reference(raw: str | None) -> MintReference | None:
    if not raw:
        return None
    txid, sep, vout = raw.rpartition(":")
    if not sep or not txid:
        raise CLIError(f"--mint must look like TXID:VOUT, got {raw!r}")
    try:
        return MintReference(txid=txid, vout=int(vout))
    except ValueError as exc:
        raise CLIError(f"invalid vout in --mint: {vout!r}") from exc


def spec_from_args(args: argparse.Namespace) -> EtchingSpec:
    """Build an :class:`EtchingSpec` from parsed etching arguments."""

    term_values = (args.height_start, args.height_end, args.offset_start, args.offset_end)
    terms = None
    if args.amount is not None or args.cap is not None:
        if args.amount is None or args.cap is None:
            raise CLIError("--amount and --cap must be supplied together")
        terms = MintTerms(
            amount=args.amount,
            cap=args.cap,
            height_start=args.height_start,
            height_end=args.height_end,
            offset_start=args.offset_start,
            offset_end=args.offset_end,
        )
    elif any(value is not None for value in term_values):
        raise CLIError("height/offset bounds require --amount and --cap")

    spec = EtchingSpec(
        name=args.name,
        symbol=args.symbol,
        divisibility=args.divisibility,
        premine=args.premine,
        terms=terms,
        turbo=args.turbo,
        mint=_parse_mint_reference(args.mint),
        pointer=args.pointer,
    )
    spec.validate()
    return spec


def _field_label(field: TaggedField) -> str:
    known = field.known_tag
    return known.name.lower() if known is not None else f"tag_{field.tag}"


def _normalize_hex(value: str) -> bytes:
    cleaned = value.strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    try:
        return bytes.fromhex(cleaned)
    except ValueError as exc:
        raise CLIError(f"not valid hex: {value!r}") from exc


def cmd_encode(args: argparse.Namespace) -> None:
    spec = spec_from_args(args)
    fields = build_fields(spec)
    payload = serialize_fields(fields)
    script = runestone_script(payload)

    if args.as_json:
        output = {
            "name": spec.name,
            "payload_hex": payload.hex(),
            "script_hex": script.hex(),
            "fields": [{"tag": int(f.tag), "label": _field_label(f), "value": str(f.value)} for f in fields],
        }
        print(json.dumps(output, indent=2))
        return

    print(f"payload: {payload.hex()}")
    print(f"script:  {script.hex()}")
    for field in fields:
        print(f"  {int(field.tag):>3} {_field_label(field):<13} {field.value}")


def cmd_decode(args: argparse.Namespace) -> None:
    data = _normalize_hex(args.hex)
    payload = unframe(data) if args.script else data
    fields = parse_fields(payload)
    grouped = group_fields(fields)

    summary = None
    flags = grouped.get(int(Tag.BODY), [0])[0]
    if flags & Flag.ETCHING:
        summary = describe_etching(etching_from_fields(grouped))

    if args.as_json:
        output: dict[str, Any] = {
            "payload_hex": payload.hex(),
            "fields": [{"tag": int(f.tag), "label": _field_label(f), "value": str(f.value)} for f in fields],
        }
        if summary is not None:
            output["summary"] = summary
        print(json.dumps(output, indent=2))
        return

    for field in fields:
        print(f"  {int(field.tag):>3} {_field_label(field):<13} {field.value}")
    if summary is not None:
        print()
        print(summary)


def cmd_describe(args: argparse.Namespace) -> None:
    print(describe_etching(spec_from_args(args)))


def _provider_for(args: argparse.Namespace, config: EtcherConfig, rpc: BitcoinRPCClient) -> Any:
    if args.provider == "node":
        return NodeRPCProvider(rpc, conf_target=args.conf_target or 6)
    if not config.esplora_url:
        raise ConfigurationError(
            f"No Esplora URL is known for {config.network.value}; set etcher.esplora_url or use --provider node"
        )
    return EsploraProvider(
        config.esplora_url,
        lookup_timeout=config.request_timeout,
        broadcast_timeout=config.broadcast_timeout,
    )


def wait_for_funding(
    orchestrator: EtchingOrchestrator,
    *,
    poll_interval: float,
    max_polls: int | None = None,
    sleep: Any = time.sleep,
) -> None:
    """Poll until funding is observed or ``max_polls`` checks have been made."""

    polls = 0
    while True:
        polls += 1
        try:
            orchestrator.poll_funding()
            return
        except PendingFunding as pending:
            if max_polls is not None and polls >= max_polls:
                raise CLIError(f"gave up after {polls} funding checks: {pending}") from pending
            logger.info("%s; checking again in %.0fs", pending, poll_interval)
            sleep(poll_interval)


def write_receipt(path: Path, payload: bytes, details: dict[str, Any]) -> Path:
    """Persist a JSON receipt for the etching run."""

    path.parent.mkdir(parents=True, exist_ok=True)
    receipt: dict[str, Any] = {"payload_hex": payload.hex()}
    receipt.update(details)
    path.write_text(json.dumps(receipt, indent=2))
    return path


def cmd_etch(args: argparse.Namespace) -> None:
    spec = spec_from_args(args)
    payload = serialize_fields(build_fields(spec))

    overrides = {"network": args.network} if args.network else None
    config = load_etcher_config(overrides=overrides)
    rpc = BitcoinRPCClient(load_rpc_config(network=config.network))
    provider = _provider_for(args, config, rpc)
    orchestrator = EtchingOrchestrator(
        NodeWalletSigner(rpc),
        provider,
        config.network,
        EtchingSettings.from_config(config),
    )

    commit = orchestrator.begin_commit()
    print(f"Fund the commit address to continue: {commit.commit_address}")
    wait_for_funding(orchestrator, poll_interval=args.poll_interval, max_polls=args.max_polls)
    funding = commit.funding
    assert funding is not None
    print(f"Funding observed: {funding.txid}:{funding.vout} ({funding.value} sats)")

    selection = select_fee_rate(
        provider,
        conf_target=args.conf_target,
        user_fee_rate_satvb=args.fee_rate,
        min_fee_rate_satvb_floor=args.min_fee_rate,
    )
    logger.info(
        "Using fee rate %.2f sat/vB (%s; floors: %s)",
        selection.fee_rate_sat_vb,
        selection.source,
        format_floors_for_log(selection.floors_applied),
    )

    result = orchestrator.build_reveal(spec, selection.fee_rate_sat_vb, args.recipient)
    print(f"Reveal broadcast: {result.transaction_id}")
    print(f"  miner fee:   {result.miner_fee} sats")
    print(f"  service fee: {result.service_fee} sats")
    print(f"  total fee:   {result.total_fee} sats")
    print(f"  recipient:   {result.recipient_value} sats")

    if args.receipt:
        details: dict[str, Any] = {
            "network": config.network.value,
            "rune": spec.name,
            "commit_address": commit.commit_address,
            "funding": {"txid": funding.txid, "vout": funding.vout, "value": funding.value},
            "fee_rate_sat_vb": selection.fee_rate_sat_vb,
            "fee_rate_source": selection.source,
            "reveal": result.summary(),
        }
        if orchestrator.reveal_template is not None:
            details["unsigned_reveal"] = orchestrator.reveal_template.to_dict()
        path = write_receipt(args.receipt, payload, details)
        print(f"Receipt written to {path}")


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.config:
        set_default_config_path(args.config)
    try:
        if args.command == "encode":
            cmd_encode(args)
        elif args.command == "decode":
            cmd_decode(args)
        elif args.command == "describe":
            cmd_describe(args)
        elif args.command == "etch":
            cmd_etch(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (
        CLIError,
        ConfigurationError,
        RPCError,
        ProviderError,
        EtchingError,
        InvalidEtching,
        InvalidNameCharacter,
        MalformedVarInt,
        TruncatedPayload,
        EnvelopeError,
        AddressError,
    ) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
