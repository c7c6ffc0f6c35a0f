"""HTTP client for operator withdrawal endpoints."""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import requests

logger = logging.getLogger(__name__)


@dataclass
class OperatorResponse:
    """Outcome of one payout request to one operator"""
    endpoint: str
    ok: bool
    status: Optional[int] = None
    body: Any = None
    error: Optional[str] = None


def build_payout_payload(payout_index: int, user_sig: str, marker_txid: str, marker_vout: int,
                         marker_script_pubkey: str, marker_value: int,
                         destination_script_pubkey: str, amount_sats: int) -> Dict[str, Any]:
    """Operator wire format; only `output_txout.value` changes between rounds"""
    return {
        "idx": payout_index,
        "user_sig": user_sig,
        "input_utxo": {
            "outpoint": f"{marker_txid}:{marker_vout}",
            "txout": {
                "script_pubkey": marker_script_pubkey,
                "value": marker_value,
            },
        },
        "output_txout": {
            "script_pubkey": destination_script_pubkey,
            "value": amount_sats,
        },
    }


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(data, dict) and data.get("error"):
        return f"HTTP {response.status_code}: {data['error']}"
    return f"HTTP {response.status_code}"


class OperatorClient:
    """Posts payout requests; never raises, every failure becomes a response

    Called from several threads at once, so each request goes through
    `requests.post` rather than a shared Session.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def submit_payout_request(self, endpoint: str, payload: Dict[str, Any]) -> OperatorResponse:
        logger.debug(f"Sending payload to endpoint: {endpoint}, payload: {payload}")
        try:
            response = requests.post(endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Error in endpoint {endpoint}: {e}")
            return OperatorResponse(endpoint=endpoint, ok=False, error=str(e))

        if response.status_code != 200:
            message = _error_message(response)
            logger.warning(f"Endpoint {endpoint} rejected payout: {message}")
            return OperatorResponse(endpoint=endpoint, ok=False,
                                    status=response.status_code, error=message)

        try:
            body = response.json()
        except ValueError:
            body = response.text
        logger.debug(f"Response from {endpoint}: {body}")
        return OperatorResponse(endpoint=endpoint, ok=True, status=200, body=body)
