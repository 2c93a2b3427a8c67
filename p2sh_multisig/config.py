"""Shared configuration loader for the multisig tooling."""

from __future__ import annotations

import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".p2sh-multisig.yaml"
DEFAULT_SESSION_DIR = Path("./sessions")
DEFAULT_STATUS_PATH = Path(tempfile.gettempdir()) / "p2sh_multisig_status.json"
DEFAULT_BATCH_SIZE = 200
DEFAULT_FEE_RATE = Decimal("0.0001")
DEFAULT_PRIVATE_KEY_ENV = "MSIG_PRIVATE_KEY"
_CONFIG_PATH_OVERRIDE: Path | None = None

TRANSPORTS = {"http", "cli"}


@dataclass
class RPCConfig:
    """Connection details for the node, over HTTP JSON-RPC or a ``*-cli`` binary."""

    user: str | None = None
    password: str | None = None
    host: str = "127.0.0.1"
    port: int = 8332
    use_https: bool = False
    wallet: str | None = None
    transport: str = "http"
    cli_binary: str = "./junkcoin-cli"
    cli_args: list[str] = field(default_factory=list)
    timeout: int = 30

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class PrivateKeySource:
    """Where the signing key comes from.

    Exactly one of ``literal``, ``env_var`` or ``key_file`` is normally set.
    ``prompt`` is an adapter installed by the interactive console and is only
    consulted when the other sources come up empty.
    """

    literal: str | None = None
    env_var: str | None = DEFAULT_PRIVATE_KEY_ENV
    key_file: Path | None = None
    prompt: Callable[[], str | None] | None = None

    def resolve(self, env: Mapping[str, str] | None = None, *, allow_prompt: bool = True) -> str | None:
        env_map = os.environ if env is None else env
        if self.literal:
            return self.literal.strip()
        if self.env_var and env_map.get(self.env_var):
            return env_map[self.env_var].strip()
        if self.key_file is not None:
            try:
                value = self.key_file.expanduser().read_text().strip()
            except OSError as exc:
                raise ConfigurationError(f"Unable to read key file {self.key_file}: {exc}") from exc
            if value:
                return value
        if allow_prompt and self.prompt is not None:
            value = self.prompt()
            return value.strip() if value else None
        return None


@dataclass
class MultisigConfig:
    """Explicit configuration handed to the multisig core.

    ``node`` is any object implementing the ``NodeRPC`` capability surface; it
    is left ``None`` by the loaders and attached by the caller.
    """

    node: Any = None
    p2sh_address: str | None = None
    redeem_script: str | None = None
    private_key_source: PrivateKeySource = field(default_factory=PrivateKeySource)
    batch_size: int = DEFAULT_BATCH_SIZE
    fee_default: Decimal = DEFAULT_FEE_RATE
    min_confirmations: int = 1
    max_confirmations: int = 9999999
    page_size: int = 500
    max_pages: int = 100
    confirmation_target: int = 6
    session_dir: Path = DEFAULT_SESSION_DIR
    status_path: Path = DEFAULT_STATUS_PATH
    refresh_between_batches: bool = False
    max_batches: int | None = None

    def resolve_private_key(self) -> str | None:
        return self.private_key_source.resolve()


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _resolve_config_path(config_path: str | Path | None) -> tuple[Path, bool]:
    explicit = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    if config_path is not None:
        return Path(config_path).expanduser(), explicit
    return _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH, explicit


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


def _section(file_config: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
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


def _coerce_decimal(raw: Any, *, source: str) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ConfigurationError(f"Invalid decimal in {source}: {raw}") from exc


def _coerce_args(raw: Any, *, source: str) -> list[str] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw]
    raise ConfigurationError(f"Invalid argument list in {source}: {raw}")


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


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RPCConfig:
    """Load node connection settings from environment variables and optional YAML."""

    env_map = os.environ if env is None else env
    path, explicit = _resolve_config_path(config_path)
    file_config = _load_config_file(path, required=explicit)
    rpc_section = _section(file_config, "rpc", path)
    override_map = dict(overrides or {})

    transport = str(
        _first_value(
            override_map.get("transport"),
            env_map.get("MSIG_RPC_TRANSPORT"),
            rpc_section.get("transport"),
            "http",
        )
    ).lower()
    if transport not in TRANSPORTS:
        raise ConfigurationError(f"Unknown RPC transport '{transport}'; expected one of {sorted(TRANSPORTS)}")

    endpoint_host, endpoint_port, endpoint_use_https = _parse_endpoint(
        _first_value(
            override_map.get("endpoint"),
            env_map.get("MSIG_RPC_ENDPOINT") or env_map.get("MSIG_RPC_URL"),
            rpc_section.get("endpoint"),
        )
    )

    resolved_user = _first_value(override_map.get("user"), env_map.get("MSIG_RPC_USER"), rpc_section.get("user"))
    resolved_password = _first_value(
        override_map.get("password"), env_map.get("MSIG_RPC_PASSWORD"), rpc_section.get("password")
    )
    if transport == "http" and (not resolved_user or not resolved_password):
        raise ConfigurationError(
            "RPC credentials must be provided via MSIG_RPC_* environment variables or a config file "
            "(or set transport: cli to drive a local *-cli binary)"
        )

    resolved_host = _first_value(
        override_map.get("host"), endpoint_host, env_map.get("MSIG_RPC_HOST"), rpc_section.get("host"), "127.0.0.1"
    )
    resolved_port = _first_value(
        _coerce_int(override_map.get("port"), source="overrides"),
        endpoint_port,
        _coerce_int(env_map.get("MSIG_RPC_PORT"), source="environment"),
        _coerce_int(rpc_section.get("port"), source=f"{path} rpc.port"),
        8332,
    )
    resolved_use_https = _first_value(
        _coerce_bool(override_map.get("use_https")),
        endpoint_use_https,
        _coerce_bool(env_map.get("MSIG_RPC_USE_HTTPS")),
        _coerce_bool(rpc_section.get("use_https")),
        False,
    )
    resolved_wallet = _first_value(
        override_map.get("wallet"), env_map.get("MSIG_RPC_WALLET"), rpc_section.get("wallet")
    )
    resolved_binary = _first_value(
        override_map.get("cli_binary"), env_map.get("MSIG_RPC_CLI"), rpc_section.get("cli_binary"), "./junkcoin-cli"
    )
    resolved_args = _first_value(
        _coerce_args(override_map.get("cli_args"), source="overrides"),
        _coerce_args(env_map.get("MSIG_RPC_CLI_ARGS"), source="environment"),
        _coerce_args(rpc_section.get("cli_args"), source=f"{path} rpc.cli_args"),
        [],
    )
    resolved_timeout = _first_value(
        _coerce_int(override_map.get("timeout"), source="overrides"),
        _coerce_int(rpc_section.get("timeout"), source=f"{path} rpc.timeout"),
        30,
    )

    return RPCConfig(
        user=resolved_user,
        password=resolved_password,
        host=resolved_host,
        port=resolved_port,
        use_https=bool(resolved_use_https),
        wallet=resolved_wallet,
        transport=transport,
        cli_binary=str(resolved_binary),
        cli_args=resolved_args,
        timeout=resolved_timeout,
    )


def load_multisig_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> MultisigConfig:
    """Load the multisig defaults (address, script, key source, batching)."""

    env_map = os.environ if env is None else env
    path, explicit = _resolve_config_path(config_path)
    file_config = _load_config_file(path, required=explicit)
    section = _section(file_config, "multisig", path)
    override_map = dict(overrides or {})

    def pick(key: str, env_name: str | None = None) -> Any:
        env_value = env_map.get(env_name) if env_name else None
        return _first_value(override_map.get(key), env_value or None, section.get(key))

    literal_key = pick("private_key")
    if literal_key:
        logger.warning(
            "A private key is stored in plain configuration; prefer private_key_env or private_key_file"
        )
    key_file = pick("private_key_file", "MSIG_PRIVATE_KEY_FILE")
    key_source = PrivateKeySource(
        literal=literal_key,
        env_var=str(pick("private_key_env") or DEFAULT_PRIVATE_KEY_ENV),
        key_file=Path(key_file) if key_file else None,
    )

    batch_size = _coerce_int(pick("batch_size", "MSIG_BATCH_SIZE"), source="batch_size")
    if batch_size is not None and batch_size < 1:
        raise ConfigurationError(f"batch_size must be at least 1, got {batch_size}")
    max_batches = _coerce_int(pick("max_batches", "MSIG_MAX_BATCHES"), source="max_batches")
    if max_batches is not None and max_batches < 1:
        raise ConfigurationError(f"max_batches must be at least 1, got {max_batches}")
    fee_default = _coerce_decimal(pick("fee_default", "MSIG_FEE_DEFAULT"), source="fee_default")
    if fee_default is not None and fee_default <= 0:
        raise ConfigurationError(f"fee_default must be positive, got {fee_default}")

    session_dir = pick("session_dir", "MSIG_SESSION_DIR")
    status_path = pick("status_path", "MSIG_STATUS_PATH")
    refresh = _coerce_bool(pick("refresh_between_batches", "MSIG_REFRESH_BETWEEN_BATCHES"))

    return MultisigConfig(
        p2sh_address=pick("p2sh_address", "MSIG_P2SH_ADDRESS"),
        redeem_script=pick("redeem_script", "MSIG_REDEEM_SCRIPT"),
        private_key_source=key_source,
        batch_size=batch_size or DEFAULT_BATCH_SIZE,
        fee_default=fee_default or DEFAULT_FEE_RATE,
        min_confirmations=_first_value(
            _coerce_int(pick("min_confirmations"), source="min_confirmations"), default=1
        ),
        max_confirmations=_first_value(
            _coerce_int(pick("max_confirmations"), source="max_confirmations"), default=9999999
        ),
        page_size=_first_value(_coerce_int(pick("page_size"), source="page_size"), default=500),
        max_pages=_first_value(_coerce_int(pick("max_pages"), source="max_pages"), default=100),
        confirmation_target=_first_value(
            _coerce_int(pick("confirmation_target"), source="confirmation_target"), default=6
        ),
        session_dir=Path(session_dir).expanduser() if session_dir else DEFAULT_SESSION_DIR,
        status_path=Path(status_path).expanduser() if status_path else DEFAULT_STATUS_PATH,
        refresh_between_batches=bool(refresh),
        max_batches=max_batches,
    )
