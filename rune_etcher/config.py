"""Shared configuration loader for the rune etcher."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .model import (
    DUST_THRESHOLD,
    MAX_SERVICE_FEE,
    MIN_SERVICE_FEE,
    SERVICE_FEE_BPS,
    Network,
)


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".rune-etcher.yaml"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_RPC_PORTS = {Network.MAIN: 8332, Network.TEST: 18332, Network.REGTEST: 18443}
DEFAULT_ESPLORA_URLS = {
    Network.MAIN: "https://blockstream.info/api",
    Network.TEST: "https://blockstream.info/testnet/api",
}
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_BROADCAST_TIMEOUT = 15.0


@dataclass
class RPCConfig:
    """Configuration container for node JSON-RPC connection details."""

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = 8332
    use_https: bool = False
    wallet: str | None = None
    timeout: float = DEFAULT_BROADCAST_TIMEOUT

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class EtcherConfig:
    """Network, provider and fee policy settings for an etching run."""

    network: Network
    service_fee_address: str
    esplora_url: str | None = None
    min_service_fee: int = MIN_SERVICE_FEE
    max_service_fee: int = MAX_SERVICE_FEE
    service_fee_bps: int = SERVICE_FEE_BPS
    dust_threshold: int = DUST_THRESHOLD
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    broadcast_timeout: float = DEFAULT_BROADCAST_TIMEOUT


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _resolve_path(config_path: str | Path | None) -> tuple[Path, bool]:
    explicit = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )
    return path, explicit


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _section(file_config: Mapping[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_int(raw: Any, *, source: str) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer in {source}: {raw}") from exc


def _coerce_float(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number in {source}: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _parse_endpoint(raw: str | None) -> tuple[str | None, int | None, bool | None]:
    if not raw:
        return None, None, None
    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    host = parsed.hostname or None
    port = parsed.port
    use_https = parsed.scheme.lower() == "https" if parsed.scheme else None
    return host, port, use_https


def _parse_network(raw: Any, *, source: str) -> Network | None:
    if raw is None:
        return None
    try:
        return Network.parse(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid network in {source}: {exc}") from exc


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    network: Network | None = None,
) -> RPCConfig:
    """Load node RPC configuration from environment variables and optional YAML."""

    env_map = os.environ if env is None else env
    path, explicit_path = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit_path)
    rpc_section = _section(file_config, "rpc", path)
    override_map = dict(overrides or {})

    env_port = _coerce_int(env_map.get("BTC_RPC_PORT"), source="environment")
    env_use_https = _coerce_bool(env_map.get("BTC_RPC_USE_HTTPS"))
    env_endpoint = env_map.get("BTC_RPC_ENDPOINT") or env_map.get("BTC_RPC_URL")

    endpoint_host, endpoint_port, endpoint_use_https = _parse_endpoint(
        _first_value(override_map.get("endpoint"), env_endpoint, rpc_section.get("endpoint"))
    )

    resolved_user = _first_value(
        override_map.get("user"), env_map.get("BTC_RPC_USER"), rpc_section.get("user")
    )
    resolved_password = _first_value(
        override_map.get("password"), env_map.get("BTC_RPC_PASSWORD"), rpc_section.get("password")
    )
    if not resolved_user or not resolved_password:
        raise ConfigurationError(
            "RPC credentials must be provided via BTC_RPC_* environment variables or a config file"
        )

    resolved_host = _first_value(
        override_map.get("host"),
        endpoint_host,
        env_map.get("BTC_RPC_HOST"),
        rpc_section.get("host"),
        "127.0.0.1",
    )
    resolved_port = _first_value(
        _coerce_int(override_map.get("port"), source="overrides"),
        endpoint_port,
        env_port,
        _coerce_int(rpc_section.get("port"), source=f"{path} rpc.port"),
        DEFAULT_RPC_PORTS[network or Network.MAIN],
    )
    resolved_use_https = _first_value(
        _coerce_bool(override_map.get("use_https")),
        endpoint_use_https,
        env_use_https,
        _coerce_bool(rpc_section.get("use_https")),
        False,
    )
    resolved_wallet = _first_value(
        override_map.get("wallet"), env_map.get("BTC_RPC_WALLET"), rpc_section.get("wallet")
    )
    resolved_timeout = _first_value(
        _coerce_float(override_map.get("timeout"), source="overrides"),
        _coerce_float(env_map.get("BTC_RPC_TIMEOUT"), source="environment"),
        _coerce_float(rpc_section.get("timeout"), source=f"{path} rpc.timeout"),
        DEFAULT_BROADCAST_TIMEOUT,
    )

    return RPCConfig(
        user=resolved_user,
        password=resolved_password,
        host=resolved_host,
        port=resolved_port,
        use_https=bool(resolved_use_https),
        wallet=resolved_wallet,
        timeout=resolved_timeout,
    )


def load_etcher_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> EtcherConfig:
    """Load network and fee policy from ``RUNE_ETCHER_*`` variables and optional YAML."""

    env_map = os.environ if env is None else env
    path, explicit_path = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit_path)
    section = _section(file_config, "etcher", path)
    override_map = dict(overrides or {})

    def pick(key: str) -> Any:
        return _first_value(
            override_map.get(key),
            env_map.get(f"RUNE_ETCHER_{key.upper()}"),
            section.get(key),
        )

    network = _parse_network(pick("network"), source="etcher.network") or Network.MAIN

    service_fee_address = pick("service_fee_address")
    if not service_fee_address:
        raise ConfigurationError(
            "A service fee collection address is required; set RUNE_ETCHER_SERVICE_FEE_ADDRESS "
            "or etcher.service_fee_address"
        )

    config = EtcherConfig(
        network=network,
        service_fee_address=str(service_fee_address),
        esplora_url=pick("esplora_url") or DEFAULT_ESPLORA_URLS.get(network),
        min_service_fee=_first_value(
            _coerce_int(pick("min_service_fee"), source="min_service_fee"), default=MIN_SERVICE_FEE
        ),
        max_service_fee=_first_value(
            _coerce_int(pick("max_service_fee"), source="max_service_fee"), default=MAX_SERVICE_FEE
        ),
        service_fee_bps=_first_value(
            _coerce_int(pick("service_fee_bps"), source="service_fee_bps"), default=SERVICE_FEE_BPS
        ),
        dust_threshold=_first_value(
            _coerce_int(pick("dust_threshold"), source="dust_threshold"), default=DUST_THRESHOLD
        ),
        request_timeout=_first_value(
            _coerce_float(pick("request_timeout"), source="request_timeout"),
            default=DEFAULT_REQUEST_TIMEOUT,
        ),
        broadcast_timeout=_first_value(
            _coerce_float(pick("broadcast_timeout"), source="broadcast_timeout"),
            default=DEFAULT_BROADCAST_TIMEOUT,
        ),
    )

    if config.min_service_fee > config.max_service_fee:
        raise ConfigurationError(
            f"min_service_fee ({config.min_service_fee}) exceeds max_service_fee ({config.max_service_fee})"
        )
    if config.dust_threshold < 0 or config.service_fee_bps < 0:
        raise ConfigurationError("dust_threshold and service_fee_bps must be non-negative")
    return config
