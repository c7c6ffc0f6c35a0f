"""
Withdrawal state machine.

    MARKER_PENDING -> MARKER_CREATED -> BURN_PENDING -> BURN_CONFIRMED
        -> INDEX_RESOLVED -> PAYOUT_NEGOTIATING -> COMPLETED

Each transition is gated by a field of the checkpoint. The record is saved
after every external effect succeeds and before the next step starts, so a
run can be interrupted at any point and resumed from the same file.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from web3 import Web3

from .bitcoin_rpc import BitcoinWallet
from .checkpoint import CheckpointStore, WithdrawalRecord
from .citrea import BURN_VALUE_WEI, CitreaClient, payout_index_from_receipt
from .config import Config, BURN_AMOUNT_CBTC, MARKER_VALUE_SATS, backup_path
from .errors import ExternalCallError, InsufficientFundsError, InvalidCheckpointError
from .negotiator import PayoutNegotiator, PayoutResult, amount_schedule

logger = logging.getLogger(__name__)


class WithdrawalState(Enum):
    MARKER_PENDING = "marker_pending"
    MARKER_CREATED = "marker_created"
    BURN_PENDING = "burn_pending"
    BURN_CONFIRMED = "burn_confirmed"
    INDEX_RESOLVED = "index_resolved"
    PAYOUT_NEGOTIATING = "payout_negotiating"
    COMPLETED = "completed"


def state_of(record: WithdrawalRecord) -> WithdrawalState:
    """Durable state of a record

    BURN_CONFIRMED, PAYOUT_NEGOTIATING and COMPLETED are never read back from
    disk: the first is immediately followed by index resolution, the others
    depend on the chain.
    """
    if record.marker_txid is None:
        return WithdrawalState.MARKER_PENDING
    if record.burn_tx_hash is None:
        return WithdrawalState.MARKER_CREATED
    if record.payout_index is None:
        return WithdrawalState.BURN_PENDING
    return WithdrawalState.INDEX_RESOLVED


@dataclass
class WithdrawalResult:
    state: WithdrawalState
    record: WithdrawalRecord
    payout: Optional[PayoutResult] = None
    spending_txid: Optional[str] = None


def initiate_withdrawal(config: Config, wallet: BitcoinWallet,
                        destination_address: str) -> Tuple[CheckpointStore, WithdrawalRecord]:
    """Create the marker key and the checkpoint for a new withdrawal

    The checkpoint is written before anything is spent so the withdrawal can
    always be resumed from it.
    """
    if not destination_address:
        raise InvalidCheckpointError("Withdrawal address is required",
                                     field="destinationAddress", reason="missing")
    # Raises on malformed amount parameters
    amount_schedule(config.start_amount, config.precision, config.min_withdrawal_amount)

    descriptor, address = wallet.new_marker()
    record = WithdrawalRecord(
        descriptor=descriptor,
        address=address,
        destination_address=destination_address,
    )
    store = CheckpointStore(backup_path(config, address))
    store.create(record)
    logger.info(f"Withdrawal backup written to {store.path}")
    return store, record


class WithdrawalStateMachine:
    """Drives one withdrawal from its checkpoint to completion"""

    def __init__(self, config: Config, store: CheckpointStore, wallet: BitcoinWallet,
                 citrea: CitreaClient, negotiator: PayoutNegotiator):
        self.config = config
        self.store = store
        self.wallet = wallet
        self.citrea = citrea
        self.negotiator = negotiator
        self.record: Optional[WithdrawalRecord] = None

    def _save(self):
        self.store.save(self.record)

    def run(self) -> WithdrawalResult:
        """Continue the withdrawal from the first unsatisfied transition

        Raises:
            InvalidCheckpointError: the checkpoint cannot drive a withdrawal
            InsufficientFundsError: a wallet needs topping up
            ExternalCallError: a chain call failed; the record is consistent
            NegotiationExhaustedError: no operator accepted; safe to re-run
        """
        self.record = self.store.load()
        self.check_preconditions(self.record)
        logger.info(f"Resuming withdrawal {self.record.id} in state {state_of(self.record).value}")

        self.step_create_marker()

        outspend = self.wallet.is_output_spent(self.record.marker_txid, self.record.marker_vout)
        if outspend.spent:
            logger.info("✓ Withdrawal completed.")
            if outspend.txid:
                logger.info(f"You can view the transaction on Bitcoin Explorer: "
                            f"{self.config.bitcoin_explorer_url}tx/{outspend.txid}")
            return WithdrawalResult(WithdrawalState.COMPLETED, self.record, spending_txid=outspend.txid)

        self.step_burn_and_resolve_index()

        logger.info("=" * 70)
        logger.info(f"Negotiating payout for withdrawal index {self.record.payout_index}...")
        logger.info("=" * 70)
        payout = self.negotiator.negotiate(self.record)

        if payout.already_spent:
            logger.info("✓ Withdrawal completed.")
        else:
            logger.info(f"✓ Withdrawal successful. You will receive {payout.amount} BTC soon.")
            for txid in payout.payment_txids:
                logger.info(f"  {self.config.bitcoin_explorer_url}tx/{txid}")
        return WithdrawalResult(WithdrawalState.COMPLETED, self.record, payout=payout)

    def check_preconditions(self, record: WithdrawalRecord):
        """Validate the checkpoint and parameters before any external call"""
        if not record.descriptor or not record.address:
            raise InvalidCheckpointError("Invalid backup data: descriptor and address are required",
                                         field="descriptor", reason="missing")
        if not record.destination_address:
            raise InvalidCheckpointError("Withdrawal address is not set",
                                         field="destinationAddress", reason="missing")
        if record.burn_tx_hash and record.marker_txid is None:
            raise InvalidCheckpointError("Backup has a burn transaction but no marker UTXO",
                                         field="markerTxid", reason="missing")
        # Raises on malformed amount parameters
        self.negotiator.schedule()

    def step_create_marker(self):
        """MARKER_PENDING -> MARKER_CREATED"""
        record = self.record
        if record.marker_txid is not None:
            logger.info(f"[SKIP] Marker UTXO already created: {record.marker_outpoint}")
            return

        logger.info("=" * 70)
        logger.info(f"Creating dust UTXO of {MARKER_VALUE_SATS} sats...")
        logger.info("=" * 70)

        # A previous run may have broadcast the marker and died before saving it
        existing = self.wallet.find_funding(record.address)
        if existing is not None:
            txid, vout = existing
            logger.info(f"Found marker UTXO sent by an earlier run: {txid}:{vout}")
        else:
            try:
                txid, vout = self.wallet.create_funded_output(record.address, MARKER_VALUE_SATS)
            except InsufficientFundsError as e:
                logger.error("Error creating dust UTXO")
                logger.error("You need to have some funds in your wallet.")
                if e.balance is not None:
                    logger.info(f"Your wallet balance: {e.balance}")
                raise

        record.marker_txid = txid
        record.marker_vout = vout
        self._save()
        logger.info(f"✓ Marker UTXO: {record.marker_outpoint}")

    def step_burn_and_resolve_index(self):
        """MARKER_CREATED -> BURN_PENDING -> BURN_CONFIRMED -> INDEX_RESOLVED"""
        record = self.record
        if record.payout_index is not None:
            logger.info(f"[SKIP] Withdrawal index already known: {record.payout_index}")
            return

        if record.burn_tx_hash is None:
            receipt = self.burn()
        else:
            logger.info(f"Withdraw transaction {record.burn_tx_hash} already recorded, reconciling...")
            receipt = self.reconcile_burn()

        record.payout_index = payout_index_from_receipt(receipt)
        self._save()
        logger.info(f"✓ Withdrawal index: {record.payout_index}")

    def burn(self) -> Dict[str, Any]:
        """Sign, checkpoint, broadcast and confirm the collateral burn"""
        record = self.record
        logger.info("=" * 70)
        logger.info(f"Withdrawing {BURN_AMOUNT_CBTC} cBTC...")
        logger.info("=" * 70)

        if self.config.check_citrea_balance:
            balance = self.citrea.get_balance()
            if balance < BURN_VALUE_WEI:
                logger.error(f"You need to have at least {BURN_AMOUNT_CBTC} cBTC in your Citrea wallet.")
                raise InsufficientFundsError(
                    "citrea",
                    balance=Web3.from_wei(balance, "ether"),
                    required=BURN_AMOUNT_CBTC,
                )

        signed = self.citrea.build_burn(record.marker_txid)

        # Hash is durable before the transaction can exist on chain
        record.burn_tx_hash = signed.tx_hash
        record.burn_nonce = signed.nonce
        record.burn_raw_tx = signed.raw
        self._save()

        self.citrea.send_raw(signed.raw)
        receipt = self.citrea.wait_for_receipt(signed.tx_hash)
        logger.info(f"Withdrawal tx on Citrea completed, see the tx on "
                    f"{self.config.citrea_explorer_url}tx/{signed.tx_hash}")
        return receipt

    def reconcile_burn(self) -> Dict[str, Any]:
        """Find out what happened to a recorded burn before anything is resent

        The same signed transaction is rebroadcast only while its nonce is
        unused, so it can land at most once.
        """
        record = self.record
        tx_hash = record.burn_tx_hash

        receipt = self.citrea.get_receipt(tx_hash)
        if receipt is not None:
            if receipt.get("status") == 0:
                logger.warning(f"Withdraw transaction {tx_hash} reverted, nothing was burned")
                return self._replace_burn()
            return receipt

        if self.citrea.is_known(tx_hash):
            logger.info(f"Withdraw transaction {tx_hash} is pending, waiting for receipt...")
            return self.citrea.wait_for_receipt(tx_hash)

        if record.burn_nonce is None or record.burn_raw_tx is None:
            raise ExternalCallError(
                "reconcile withdraw transaction",
                "transaction is unknown to Citrea and no signed copy is stored; "
                "check the Citrea explorer before retrying",
                tx_hash=tx_hash,
            )

        if self.citrea.get_nonce("latest") <= record.burn_nonce:
            logger.info(f"Rebroadcasting withdraw transaction {tx_hash} (nonce {record.burn_nonce})")
            self.citrea.send_raw(record.burn_raw_tx)
            return self.citrea.wait_for_receipt(tx_hash)

        # The burn itself may have been mined since the first lookup
        receipt = self.citrea.get_receipt(tx_hash)
        if receipt is not None and receipt.get("status") != 0:
            logger.info(f"Withdraw transaction {tx_hash} was mined in the meantime")
            return receipt

        logger.warning(f"Nonce {record.burn_nonce} was used by another transaction; "
                       f"{tx_hash} can no longer be mined")
        return self._replace_burn()

    def _replace_burn(self) -> Dict[str, Any]:
        record = self.record
        record.replaced_burn_tx_hashes.append(record.burn_tx_hash)
        record.burn_tx_hash = None
        record.burn_nonce = None
        record.burn_raw_tx = None
        self._save()
        return self.burn()
