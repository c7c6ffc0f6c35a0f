"""Tests for the operator HTTP client."""

from unittest.mock import Mock, patch

import pytest
import requests

from clementine_withdraw.operators import OperatorClient, build_payout_payload

ENDPOINT = "http://op0/withdrawals"


@pytest.fixture
def post():
    with patch("clementine_withdraw.operators.requests.post") as post:
        yield post


def http_response(status, body=None, text=""):
    response = Mock(status_code=status, text=text)
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def test_build_payout_payload():
    payload = build_payout_payload(3, "sig", "ab" * 32, 0, "5120aa", 546, "0014bb", 999_000_000)

    assert payload["idx"] == 3
    assert payload["user_sig"] == "sig"
    assert payload["input_utxo"]["outpoint"] == f"{'ab' * 32}:0"
    assert payload["input_utxo"]["txout"] == {"script_pubkey": "5120aa", "value": 546}
    assert payload["output_txout"] == {"script_pubkey": "0014bb", "value": 999_000_000}


class TestSubmitPayoutRequest:
    """Test response classification."""

    def test_accepted(self, post):
        post.return_value = http_response(200, {"withdrawal_operator_payments": [{"txid": "t"}]})
        client = OperatorClient(timeout=5)

        response = client.submit_payout_request(ENDPOINT, {"idx": 1})

        assert response.ok
        assert response.status == 200
        assert response.body["withdrawal_operator_payments"][0]["txid"] == "t"
        post.assert_called_once_with(ENDPOINT, json={"idx": 1}, timeout=5)

    def test_accepted_non_json_body(self, post):
        post.return_value = http_response(200, text="ok")
        response = OperatorClient().submit_payout_request(ENDPOINT, {})

        assert response.ok
        assert response.body == "ok"

    def test_rejected_with_error_message(self, post):
        post.return_value = http_response(400, {"error": "amount too high"})
        response = OperatorClient().submit_payout_request(ENDPOINT, {})

        assert not response.ok
        assert response.status == 400
        assert response.error == "HTTP 400: amount too high"

    def test_rejected_plain_text(self, post):
        post.return_value = http_response(502, text="Bad Gateway")
        response = OperatorClient().submit_payout_request(ENDPOINT, {})

        assert not response.ok
        assert response.error == "HTTP 502: Bad Gateway"

    def test_transport_error_does_not_raise(self, post):
        post.side_effect = requests.ConnectionError("refused")
        response = OperatorClient().submit_payout_request(ENDPOINT, {})

        assert not response.ok
        assert response.status is None
        assert "refused" in response.error

    def test_each_call_posts_directly(self, post):
        post.return_value = http_response(200, {"txid": "t"})
        client = OperatorClient()

        client.submit_payout_request(ENDPOINT, {})
        client.submit_payout_request("http://op1/withdrawals", {})

        assert post.call_count == 2
        assert not hasattr(client, "session")
