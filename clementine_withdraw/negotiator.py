"""
Payout negotiation.

The marker spend is offered to every operator at a strictly decreasing
sequence of amounts until one operator answers HTTP 200. Each offer is signed
SIGHASH_SINGLE|ANYONECANPAY so the operator can batch it with other inputs.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, List, Any, Sequence, Tuple

from .bitcoin_rpc import BitcoinWallet, btc_to_sats
from .checkpoint import WithdrawalRecord
from .config import Config, MARKER_VALUE_SATS
from .errors import ExternalCallError, InvalidCheckpointError, NegotiationExhaustedError
from .operators import OperatorClient, OperatorResponse, build_payout_payload

logger = logging.getLogger(__name__)

EIGHT_PLACES = Decimal("0.00000001")


def amount_schedule(start, step, floor) -> List[Decimal]:
    """Candidate payout amounts from `start` down to `floor` in `step` decrements

    Amounts are computed as start - i * step (no accumulated drift) and
    rounded to 8 decimal places, so the same parameters always give the same
    list.
    """
    start, step, floor = (Decimal(str(v)) for v in (start, step, floor))

    if step <= 0:
        raise InvalidCheckpointError(f"Precision must be positive, got {step}",
                                     field="precision", reason="not positive")
    if floor <= 0:
        raise InvalidCheckpointError(f"Minimum withdrawal amount must be positive, got {floor}",
                                     field="min_withdrawal_amount", reason="not positive")
    if floor > start:
        raise InvalidCheckpointError(
            f"Minimum withdrawal amount {floor} is above the starting amount {start}",
            field="min_withdrawal_amount", reason="above start")

    amounts = []
    i = 0
    while True:
        amount = (start - step * i).quantize(EIGHT_PLACES, rounding=ROUND_HALF_EVEN)
        if amount < floor:
            break
        amounts.append(amount)
        i += 1
    return amounts


@dataclass
class PayoutResult:
    """Successful end of a negotiation"""
    amount: Optional[Decimal]
    receipt: Any = None
    endpoint: Optional[str] = None
    already_spent: bool = False

    @property
    def payment_txids(self) -> List[str]:
        """Payment txids found in the operator receipt, if any"""
        receipt = self.receipt
        if not isinstance(receipt, dict):
            return []
        if receipt.get("txid"):
            return [receipt["txid"]]
        payments = receipt.get("withdrawal_operator_payments") or []
        return [p["txid"] for p in payments if isinstance(p, dict) and p.get("txid")]


class PayoutNegotiator:
    """Runs the amount-stepping rounds against the operator set"""

    def __init__(self, wallet: BitcoinWallet, operators: OperatorClient, endpoints: Sequence[str],
                 start_amount, step, floor, round_delay: float = 1.0):
        self.wallet = wallet
        self.operators = operators
        self.endpoints = list(endpoints)
        self.start_amount = start_amount
        self.step = step
        self.floor = floor
        self.round_delay = round_delay

    @classmethod
    def from_config(cls, config: Config, wallet: BitcoinWallet,
                    operators: Optional[OperatorClient] = None) -> "PayoutNegotiator":
        return cls(
            wallet,
            operators or OperatorClient(timeout=config.request_timeout),
            config.operator_endpoints,
            start_amount=config.start_amount,
            step=config.precision,
            floor=config.min_withdrawal_amount,
            round_delay=config.round_delay,
        )

    def schedule(self) -> List[Decimal]:
        return amount_schedule(self.start_amount, self.step, self.floor)

    def negotiate(self, record: WithdrawalRecord) -> PayoutResult:
        """Offer the marker spend at each scheduled amount until an operator accepts

        Returns:
            PayoutResult; `already_spent` is set when the marker was consumed earlier

        Raises:
            NegotiationExhaustedError: every amount was rejected by every operator
        """
        if record.payout_index is None:
            raise InvalidCheckpointError("Withdrawal index is required before negotiation",
                                         field="payoutIndex", reason="missing")
        if not self.endpoints:
            raise InvalidCheckpointError("No operator endpoints configured",
                                         field="operator_endpoints", reason="empty")

        amounts = self.schedule()
        scripts: Optional[Tuple[str, str]] = None

        for attempt, amount in enumerate(amounts, 1):
            logger.info(f"Trying to withdraw {amount} BTC...")
            try:
                if scripts is None:
                    scripts = self._script_pubkeys(record)
                result = self.try_amount(record, amount, scripts)
            except ExternalCallError as e:
                logger.warning(f"Error sending withdrawal signature: {e}")
                result = None

            if result is not None:
                return result

            if attempt < len(amounts):
                logger.info(f"Withdrawal of {amount} BTC failed, retrying with a lower amount")
                time.sleep(self.round_delay)

        raise NegotiationExhaustedError(attempts=len(amounts), floor=amounts[-1])

    def _script_pubkeys(self, record: WithdrawalRecord) -> Tuple[str, str]:
        return (
            self.wallet.describe_output(record.address),
            self.wallet.describe_output(record.destination_address),
        )

    def try_amount(self, record: WithdrawalRecord, amount: Decimal,
                   scripts: Tuple[str, str]) -> Optional[PayoutResult]:
        """One negotiation round

        Returns:
            PayoutResult on acceptance or already-spent marker, None if every operator declined
        """
        signed = self.wallet.sign_input_only(
            record.marker_txid, record.marker_vout, record.descriptor,
            record.destination_address, amount,
        )
        if signed.already_spent:
            logger.info("Input not found or already spent, withdrawal completed")
            return PayoutResult(amount=None, already_spent=True)
        if not signed.complete:
            raise ExternalCallError("sign withdrawal transaction", signed.error or "incomplete")

        marker_script, destination_script = scripts
        payload = build_payout_payload(
            payout_index=record.payout_index,
            user_sig=signed.witness,
            marker_txid=record.marker_txid,
            marker_vout=record.marker_vout,
            marker_script_pubkey=marker_script,
            marker_value=MARKER_VALUE_SATS,
            destination_script_pubkey=destination_script,
            amount_sats=btc_to_sats(amount),
        )

        winner = self.fan_out(payload)
        if winner is None:
            return None

        logger.info(f"✓ Operator {winner.endpoint} accepted withdrawal of {amount} BTC")
        return PayoutResult(amount=amount, receipt=winner.body, endpoint=winner.endpoint)

    def fan_out(self, payload) -> Optional[OperatorResponse]:
        """Send `payload` to every endpoint at once

        Waits for every request to settle and returns the first successful
        response, or None if all failed.
        """
        winner = None
        with ThreadPoolExecutor(max_workers=len(self.endpoints)) as pool:
            futures = [
                pool.submit(self.operators.submit_payout_request, endpoint, payload)
                for endpoint in self.endpoints
            ]
            for future in as_completed(futures):
                response = future.result()
                if response.ok and winner is None:
                    winner = response
        return winner
