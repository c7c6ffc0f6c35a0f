"""Pytest configuration and fixtures."""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from clementine_withdraw.bitcoin_rpc import BitcoinWallet, Outspend, SignResult
from clementine_withdraw.checkpoint import CheckpointStore, WithdrawalRecord
from clementine_withdraw.citrea import CitreaClient, SignedBurn
from clementine_withdraw.config import Config
from clementine_withdraw.operators import OperatorClient

MARKER_TXID = "abc" + "0" * 61
MARKER_ADDRESS = "tb1pmarker"
DESTINATION = "tb1pdestination"
BURN_HASH = "0x" + "11" * 32


def index_log_data(index: int) -> str:
    """Withdrawal event data: txId, outputId word, index, timestamp"""
    words = [
        bytes.fromhex(MARKER_TXID)[::-1],
        bytes(32),
        index.to_bytes(32, "big"),
        (1700000000).to_bytes(32, "big"),
    ]
    return "0x" + b"".join(words).hex()


def burn_receipt(index: int = 7, status: int = 1) -> dict:
    return {
        "status": status,
        "transactionHash": BURN_HASH,
        "logs": [{
            "address": "0x3100000000000000000000000000000000000002",
            "data": index_log_data(index),
        }],
    }


@pytest.fixture
def config(tmp_path):
    return Config(
        bitcoin_rpc_url="http://127.0.0.1:18443",
        bitcoin_rpc_user="admin",
        bitcoin_rpc_password="admin",
        citrea_rpc_url="http://127.0.0.1:12345",
        citrea_private_key="0x" + "01" * 32,
        operator_endpoints=("http://op0/withdrawals", "http://op1/withdrawals", "http://op2/withdrawals"),
        backup_dir=str(tmp_path / "backups"),
        round_delay=0,
    )


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(tmp_path / "backups" / f"{MARKER_ADDRESS}.json")


@pytest.fixture
def fresh_record():
    return WithdrawalRecord(
        descriptor="tr(cVt4o7BGAig1UXywgGSmARhxMdzP5qvQsxKkSsc1XEkw3tDTQFpy)#abcdefgh",
        address=MARKER_ADDRESS,
        destination_address=DESTINATION,
    )


@pytest.fixture
def wallet():
    wallet = Mock(spec=BitcoinWallet)
    wallet.find_funding.return_value = None
    wallet.create_funded_output.return_value = (MARKER_TXID, 0)
    wallet.is_output_spent.return_value = Outspend(spent=False)
    wallet.describe_output.side_effect = lambda address: f"5120{address.encode().hex()}"
    wallet.sign_input_only.return_value = SignResult(complete=True, hex="02000000", witness="aa" * 64)
    wallet.get_balance.return_value = Decimal("1.5")
    return wallet


@pytest.fixture
def citrea():
    citrea = Mock(spec=CitreaClient)
    citrea.get_balance.return_value = 20 * 10 ** 18
    citrea.get_nonce.return_value = 3
    citrea.build_burn.return_value = SignedBurn(tx_hash=BURN_HASH, nonce=3, raw="0xf86b03")
    citrea.wait_for_receipt.return_value = burn_receipt()
    citrea.get_receipt.return_value = burn_receipt()
    citrea.is_known.return_value = True
    return citrea


@pytest.fixture
def operators():
    return Mock(spec=OperatorClient)
