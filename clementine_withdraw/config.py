"""
Configuration for the withdrawal tool.

Built-in defaults are overridden by a JSON config file (camelCase keys), which
is in turn overridden by command-line flags. The result is a frozen Config
that is constructed once in the CLI and handed to every component.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

from .errors import InvalidCheckpointError

logger = logging.getLogger(__name__)


# Citrea bridge contract and the fixed withdrawal shape it accepts
BRIDGE_CONTRACT_ADDRESS = "0x3100000000000000000000000000000000000002"
BURN_AMOUNT_CBTC = 10
MARKER_VALUE_SATS = 546
MARKER_VOUT = 0
OUTPUT_SELECTOR = b"\x00\x00\x00\x00"

DEFAULT_CONFIG_PATH = "config.json"

# config.json keys as written by the node tooling
_FILE_KEYS = {
    "bitcoinRpcUrl": "bitcoin_rpc_url",
    "bitcoinRpcUser": "bitcoin_rpc_user",
    "bitcoinRpcPassword": "bitcoin_rpc_password",
    "citreaRpcUrl": "citrea_rpc_url",
    "citreaPrivateKey": "citrea_private_key",
    "operatorEndpoints": "operator_endpoints",
    "citreaExplorerUrl": "citrea_explorer_url",
    "bitcoinExplorerUrl": "bitcoin_explorer_url",
    "backupFolderPath": "backup_dir",
    "minWithdrawalAmount": "min_withdrawal_amount",
    "precision": "precision",
    "startAmount": "start_amount",
    "roundDelay": "round_delay",
    "requestTimeout": "request_timeout",
    "receiptTimeout": "receipt_timeout",
    "checkCitreaBalance": "check_citrea_balance",
    "testnet": "network_testnet",
}


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a withdrawal run"""
    # Network endpoints
    bitcoin_rpc_url: str = ""
    bitcoin_rpc_user: str = ""
    bitcoin_rpc_password: str = ""
    citrea_rpc_url: str = "https://rpc.testnet.citrea.xyz/"
    citrea_private_key: str = ""
    operator_endpoints: Tuple[str, ...] = ("https://api.testnet.citrea.xyz/withdrawals",)

    # Explorers (bitcoin explorer doubles as the Esplora outspend indexer)
    citrea_explorer_url: str = "https://explorer.testnet.citrea.xyz/"
    bitcoin_explorer_url: str = "https://mempool.space/testnet4/"

    # Negotiation parameters
    start_amount: Decimal = Decimal(BURN_AMOUNT_CBTC)
    min_withdrawal_amount: Decimal = Decimal("9.99")
    precision: Decimal = Decimal("0.001")
    round_delay: float = 1.0

    # Paths
    backup_dir: str = "backups/"

    # Transport
    request_timeout: float = 30.0
    receipt_timeout: float = 120.0

    # Toggles
    check_citrea_balance: bool = True
    confirm: bool = False
    network_testnet: bool = True

    def missing_connection_settings(self) -> list:
        """Names of the connection settings a chain-touching command needs but lacks"""
        required = {
            "--bitcoin-rpc-url": self.bitcoin_rpc_url,
            "--bitcoin-rpc-user": self.bitcoin_rpc_user,
            "--bitcoin-rpc-password": self.bitcoin_rpc_password,
            "--citrea-rpc-url": self.citrea_rpc_url,
            "--citrea-private-key": self.citrea_private_key,
        }
        return [flag for flag, value in required.items() if not value]


def _to_decimal(name: str, value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except ArithmeticError:
        raise InvalidCheckpointError(f"Invalid {name}: {value!r}", field=name, reason="not a number")
    if not result.is_finite():
        raise InvalidCheckpointError(f"Invalid {name}: {value!r}", field=name, reason="not finite")
    return result


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw file/CLI value to the type of the Config field"""
    if name in ("start_amount", "min_withdrawal_amount", "precision"):
        return _to_decimal(name, value)
    if name in ("round_delay", "request_timeout", "receipt_timeout"):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise InvalidCheckpointError(f"Invalid {name}: {value!r}", field=name, reason="not a number")
    if name == "operator_endpoints":
        if isinstance(value, str):
            value = value.split(",")
        return tuple(endpoint.strip() for endpoint in value if endpoint.strip())
    if name in ("check_citrea_balance", "confirm", "network_testnet"):
        if isinstance(value, str):
            return value.lower() in ("1", "true", "yes", "y")
        return bool(value)
    return value


def read_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Read a JSON config file into Config field names

    Missing files are not an error; the defaults are used instead.
    """
    if not path or not os.path.exists(path):
        logger.debug(f"No config file at {path}, using defaults")
        return {}

    with open(path, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidCheckpointError(f"Invalid JSON in {path}: {e}", field="config", reason=str(e))

    logger.info(f"Config loaded from {path}")
    values = {}
    valid = {f.name for f in fields(Config)}
    for key, value in data.items():
        name = _FILE_KEYS.get(key, key)
        if name in valid:
            values[name] = value
        else:
            logger.warning(f"Ignoring unknown config key: {key}")
    return values


def load_config(path: Optional[str] = DEFAULT_CONFIG_PATH,
                overrides: Optional[Dict[str, Any]] = None) -> Config:
    """Build the run configuration: defaults <- config file <- overrides

    Args:
        path: Path to a JSON config file (optional)
        overrides: Values from the command line; None entries are ignored

    Returns:
        Frozen Config
    """
    values = read_config_file(path)
    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    if not values.get("citrea_private_key") and os.environ.get("CITREA_PRIVATE_KEY"):
        values["citrea_private_key"] = os.environ["CITREA_PRIVATE_KEY"]

    config = Config(**{name: _coerce(name, value) for name, value in values.items()})

    if not config.operator_endpoints:
        raise InvalidCheckpointError("At least one operator endpoint is required",
                                     field="operator_endpoints", reason="empty")
    return config


def backup_path(config: Config, address: str) -> Path:
    """Checkpoint file location for a marker address"""
    return Path(config.backup_dir) / f"{address}.json"
