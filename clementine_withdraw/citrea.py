"""
Citrea chain adapter.

Builds, signs and broadcasts the collateral burn (`Bridge.withdraw`) and reads
its receipt. Signing happens locally so the transaction hash is known, and
can be checkpointed, before anything reaches the network.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable

import requests
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from .config import Config, BRIDGE_CONTRACT_ADDRESS, BURN_AMOUNT_CBTC, OUTPUT_SELECTOR
from .errors import ExternalCallError, InsufficientFundsError, InvalidCheckpointError

logger = logging.getLogger(__name__)

WITHDRAW_ABI = [
    {
        "type": "function",
        "name": "withdraw",
        "stateMutability": "payable",
        "inputs": [
            {"name": "txId", "type": "bytes32"},
            {"name": "outputId", "type": "bytes4"},
        ],
        "outputs": [],
    }
]

BURN_VALUE_WEI = Web3.to_wei(BURN_AMOUNT_CBTC, "ether")

_CALL_ERRORS = (Web3Exception, ValueError, requests.RequestException)


@dataclass
class SignedBurn:
    """A signed but possibly unbroadcast burn transaction"""
    tx_hash: str
    nonce: int
    raw: str


def reverse_txid(txid: str) -> bytes:
    """Bitcoin txids are displayed byte-reversed; the bridge expects internal order"""
    return bytes.fromhex(txid)[::-1]


def _log_data(log: Dict[str, Any]) -> bytes:
    data = log["data"]
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return bytes(data)


def payout_index_from_receipt(receipt: Dict[str, Any]) -> int:
    """Extract the withdrawal index from the bridge's Withdrawal event

    The index is the 32-byte big-endian word that ends 32 bytes before the
    end of the event data.
    """
    logs = receipt.get("logs") or []
    if not logs:
        raise ExternalCallError("parse burn receipt", "receipt has no logs")

    bridge = BRIDGE_CONTRACT_ADDRESS.lower()
    log = next((l for l in logs if str(l.get("address", "")).lower() == bridge), logs[0])

    data = _log_data(log)
    if len(data) < 64:
        raise ExternalCallError("parse burn receipt", f"event data too short ({len(data)} bytes)")
    return int.from_bytes(data[-64:-32], "big")


class CitreaClient:
    """Citrea JSON-RPC client bound to the user's account"""

    def __init__(self, w3: Web3, private_key: str, receipt_timeout: float = 120.0):
        self.w3 = w3
        try:
            self.account = w3.eth.account.from_key(private_key)
        except Exception as e:
            # eth_keys reports malformed keys with its own ValidationError
            raise InvalidCheckpointError(f"Invalid Citrea private key: {e}",
                                         field="citrea_private_key", reason="malformed")
        self.receipt_timeout = receipt_timeout
        self.bridge = w3.eth.contract(
            address=Web3.to_checksum_address(BRIDGE_CONTRACT_ADDRESS),
            abi=WITHDRAW_ABI,
        )

    @classmethod
    def from_config(cls, config: Config) -> "CitreaClient":
        w3 = Web3(Web3.HTTPProvider(
            config.citrea_rpc_url,
            request_kwargs={"timeout": config.request_timeout},
        ))
        return cls(w3, config.citrea_private_key, receipt_timeout=config.receipt_timeout)

    @property
    def address(self) -> str:
        return self.account.address

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _CALL_ERRORS as e:
            raise ExternalCallError(operation, str(e))

    def get_balance(self, account: Optional[str] = None) -> int:
        """Balance in wei"""
        return self._call("citrea get balance", self.w3.eth.get_balance, account or self.address)

    def get_nonce(self, block: str = "latest") -> int:
        return self._call("citrea get nonce", self.w3.eth.get_transaction_count, self.address, block)

    def build_burn(self, marker_txid: str) -> SignedBurn:
        """Build and sign `withdraw(txId, outputId)` burning the collateral

        Raises:
            InsufficientFundsError: account cannot cover value plus gas
        """
        nonce = self.get_nonce("pending")
        call = self.bridge.functions.withdraw(reverse_txid(marker_txid), OUTPUT_SELECTOR)
        try:
            tx = call.build_transaction({
                "from": self.address,
                "value": BURN_VALUE_WEI,
                "nonce": nonce,
            })
        except _CALL_ERRORS as e:
            if "insufficient funds" in str(e).lower():
                raise InsufficientFundsError(
                    "citrea",
                    balance=Web3.from_wei(self.get_balance(), "ether"),
                    required=BURN_AMOUNT_CBTC,
                    message=f"You need to have at least {BURN_AMOUNT_CBTC} cBTC in your Citrea wallet",
                )
            raise ExternalCallError("create withdraw transaction", str(e))

        signed = self.account.sign_transaction(tx)
        return SignedBurn(
            tx_hash=Web3.to_hex(signed.hash),
            nonce=nonce,
            raw=Web3.to_hex(signed.raw_transaction),
        )

    def send_raw(self, raw: str) -> None:
        """Broadcast a signed transaction; a node that already has it is fine"""
        try:
            self.w3.eth.send_raw_transaction(raw)
        except _CALL_ERRORS as e:
            message = str(e)
            if "already known" in message.lower():
                logger.info("Burn transaction already known to the node")
                return
            if "insufficient funds" in message.lower():
                raise InsufficientFundsError(
                    "citrea",
                    balance=Web3.from_wei(self.get_balance(), "ether"),
                    required=BURN_AMOUNT_CBTC,
                )
            raise ExternalCallError("send withdraw transaction", message)

    def is_known(self, tx_hash: str) -> bool:
        """Whether the node has the transaction (mempool or chain)"""
        try:
            self.w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except _CALL_ERRORS as e:
            raise ExternalCallError("citrea get transaction", str(e))

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except _CALL_ERRORS as e:
            raise ExternalCallError("citrea get receipt", str(e))

    def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Block until the transaction is mined

        Raises:
            ExternalCallError: timeout or reverted transaction
        """
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted:
            raise ExternalCallError("wait for withdraw receipt",
                                    f"not mined after {self.receipt_timeout}s", tx_hash=tx_hash)
        except _CALL_ERRORS as e:
            raise ExternalCallError("wait for withdraw receipt", str(e), tx_hash=tx_hash)

        if receipt.get("status") == 0:
            raise ExternalCallError("withdraw transaction", "reverted", tx_hash=tx_hash)
        return receipt
