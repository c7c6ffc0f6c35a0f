"""
Bitcoin chain adapter.

BitcoinRPC is a thin JSON-RPC client for a Bitcoin Core wallet. BitcoinWallet
wraps it with the few wallet operations the withdrawal flow needs: funding
the marker output, signing the marker spend with SINGLE|ANYONECANPAY, and
checking whether the marker has been spent.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Any, Tuple

import requests

from .config import Config, MARKER_VOUT
from .errors import BitcoinRPCError, ExternalCallError, InsufficientFundsError
from .keys import new_marker_descriptor

logger = logging.getLogger(__name__)

# bitcoind RPC_WALLET_INSUFFICIENT_FUNDS
RPC_WALLET_INSUFFICIENT_FUNDS = -6
SIGHASH_SINGLE_ANYONECANPAY = "SINGLE|ANYONECANPAY"


def sats_to_btc(sats: int) -> Decimal:
    return (Decimal(sats) / Decimal(100_000_000)).quantize(Decimal("0.00000001"))


def btc_to_sats(amount: Decimal) -> int:
    return int(Decimal(amount) * 100_000_000)


@dataclass
class SignResult:
    """Outcome of signing the marker spend"""
    complete: bool
    hex: Optional[str] = None
    witness: Optional[str] = None
    error: Optional[str] = None

    @property
    def already_spent(self) -> bool:
        return bool(self.error) and "already spent" in self.error


@dataclass
class Outspend:
    spent: bool
    txid: Optional[str] = None


class BitcoinRPC:
    """Minimal Bitcoin Core JSON-RPC client"""

    def __init__(self, url: str, user: str, password: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (user, password)
        self._id = 0

    def call(self, method: str, *params: Any) -> Any:
        """Invoke an RPC method and return its `result`

        Raises:
            BitcoinRPCError: the node answered with an error object
            ExternalCallError: transport failure or unparseable response
        """
        self._id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._id,
            "method": method,
            "params": list(params),
        }
        logger.debug(f"Bitcoin RPC: {method} {list(params)}")

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalCallError(f"bitcoin rpc {method}", str(e))

        # bitcoind reports RPC errors with HTTP 500 and a JSON body
        try:
            body = response.json()
        except ValueError:
            raise ExternalCallError(
                f"bitcoin rpc {method}",
                f"HTTP {response.status_code}: {response.text[:200]}",
            )

        error = body.get("error")
        if error:
            raise BitcoinRPCError(method, error.get("message", str(error)), error.get("code"))
        return body.get("result")


class BitcoinWallet:
    """Wallet operations used by the withdrawal state machine"""

    def __init__(self, rpc: BitcoinRPC, explorer_url: Optional[str] = None,
                 timeout: float = 30.0, testnet: bool = True):
        self.rpc = rpc
        self.explorer_url = explorer_url
        self.timeout = timeout
        self.testnet = testnet

    @classmethod
    def from_config(cls, config: Config) -> "BitcoinWallet":
        rpc = BitcoinRPC(
            config.bitcoin_rpc_url,
            config.bitcoin_rpc_user,
            config.bitcoin_rpc_password,
            timeout=config.request_timeout,
        )
        return cls(rpc, explorer_url=config.bitcoin_explorer_url,
                   timeout=config.request_timeout, testnet=config.network_testnet)

    def new_marker(self) -> Tuple[str, str]:
        """Generate a single-use taproot key and derive its address

        Returns:
            Tuple of (private descriptor with checksum, address)
        """
        descriptor = new_marker_descriptor(testnet=self.testnet)
        info = self.rpc.call("getdescriptorinfo", descriptor)
        addresses = self.rpc.call("deriveaddresses", info["descriptor"])
        return f"{descriptor}#{info['checksum']}", addresses[0]

    def get_balance(self) -> Decimal:
        return Decimal(str(self.rpc.call("getbalance")))

    def create_funded_output(self, address: str, value_sats: int) -> Tuple[str, int]:
        """Fund and broadcast a transaction paying `value_sats` to `address`

        The wallet picks inputs and puts change after the marker, so the
        marker is always output 0.

        Returns:
            Tuple of (txid, vout)

        Raises:
            InsufficientFundsError: the wallet cannot fund the output
        """
        raw = self.rpc.call("createrawtransaction", [], {address: str(sats_to_btc(value_sats))})
        try:
            funded = self.rpc.call("fundrawtransaction", raw, {"changePosition": 1})
        except BitcoinRPCError as e:
            if e.code == RPC_WALLET_INSUFFICIENT_FUNDS or "Insufficient funds" in e.cause:
                balance = self._balance_or_none()
                raise InsufficientFundsError("bitcoin", balance=balance,
                                             required=sats_to_btc(value_sats),
                                             message="Wallet cannot fund the marker output")
            raise

        signed = self.rpc.call("signrawtransactionwithwallet", funded["hex"])
        if not signed.get("complete"):
            raise ExternalCallError("sign marker funding", str(signed.get("errors")))

        txid = self.rpc.call("decoderawtransaction", signed["hex"])["txid"]

        accept = self.rpc.call("testmempoolaccept", [signed["hex"]])
        if accept and not accept[0].get("allowed", False):
            raise ExternalCallError("testmempoolaccept", accept[0].get("reject-reason", "rejected"))

        self.rpc.call("sendrawtransaction", signed["hex"])
        return txid, MARKER_VOUT

    def find_funding(self, address: str, count: int = 1000) -> Optional[Tuple[str, int]]:
        """Look through recent wallet sends for an output already paying `address`

        Returns:
            Tuple of (txid, vout) or None
        """
        for tx in self.rpc.call("listtransactions", "*", count, 0, True):
            if tx.get("category") == "send" and tx.get("address") == address:
                return tx["txid"], tx["vout"]
        return None

    def _balance_or_none(self) -> Optional[Decimal]:
        try:
            return self.get_balance()
        except ExternalCallError as e:
            logger.error(f"Error getting wallet balance: {e}")
            return None

    def describe_output(self, address: str) -> str:
        """scriptPubKey hex for an address"""
        return self.rpc.call("getaddressinfo", address)["scriptPubKey"]

    def sign_input_only(self, txid: str, vout: int, descriptor: str,
                        destination: str, amount: Decimal) -> SignResult:
        """Sign a marker spend that commits only to its own input and output

        SIGHASH_SINGLE|ANYONECANPAY lets an operator append inputs and outputs
        to batch many payouts into one transaction.
        """
        psbt = self.rpc.call(
            "createpsbt",
            [{"txid": txid, "vout": vout}],
            {destination: str(amount)},
        )
        result = self.rpc.call("descriptorprocesspsbt", psbt, [descriptor], SIGHASH_SINGLE_ANYONECANPAY)

        if not result.get("complete"):
            errors = result.get("errors") or []
            error = errors[0].get("error") if errors else "Bitcoin transaction signing incomplete"
            return SignResult(complete=False, error=error)

        signed_hex = result["hex"]
        decoded = self.rpc.call("decoderawtransaction", signed_hex)
        witness_stack = decoded["vin"][0].get("txinwitness") or []
        if not witness_stack:
            return SignResult(complete=False, hex=signed_hex, error="Signed transaction has no witness")

        # Schnorr signature plus explicit sighash byte; operators expect it without the byte
        witness = witness_stack[0][:-2]
        return SignResult(complete=True, hex=signed_hex, witness=witness)

    def is_output_spent(self, txid: str, vout: int) -> Outspend:
        """Check whether an output has been spent

        Uses the Esplora outspend endpoint when an explorer is configured,
        otherwise the node's UTXO set.
        """
        if self.explorer_url:
            return self._esplora_outspend(txid, vout)
        return self._node_outspend(txid, vout)

    def _esplora_outspend(self, txid: str, vout: int) -> Outspend:
        url = f"{self.explorer_url.rstrip('/')}/api/tx/{txid}/outspend/{vout}"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ExternalCallError("get outspend", str(e), url=url)

        if data.get("spent") or data.get("txid"):
            return Outspend(spent=True, txid=data.get("txid"))
        return Outspend(spent=False)

    def _node_outspend(self, txid: str, vout: int) -> Outspend:
        if self.rpc.call("gettxout", txid, vout, True) is not None:
            return Outspend(spent=False)

        # gettxout is also null for transactions the node has never seen
        try:
            self.rpc.call("getrawtransaction", txid)
        except BitcoinRPCError as e:
            logger.debug(f"Marker tx {txid} not known to the node: {e}")
            return Outspend(spent=False)
        return Outspend(spent=True)
