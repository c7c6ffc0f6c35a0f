"""Tests for marker key generation."""

import base58
import pytest

from clementine_withdraw.keys import new_marker_descriptor, privkey_to_wif, taproot_descriptor

PRIVKEY = bytes(range(1, 33))


def test_testnet_compressed_wif():
    wif = privkey_to_wif(PRIVKEY)
    payload = base58.b58decode_check(wif)

    assert payload[0] == 0xef
    assert payload[1:33] == PRIVKEY
    assert payload[33:] == b"\x01"
    assert wif[0] == "c"


def test_mainnet_uncompressed_wif():
    payload = base58.b58decode_check(privkey_to_wif(PRIVKEY, compressed=False, testnet=False))

    assert payload[0] == 0x80
    assert len(payload) == 33


def test_known_vector():
    # private key 1
    assert privkey_to_wif(bytes(31) + b"\x01", testnet=False) == \
        "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"


def test_rejects_wrong_length():
    with pytest.raises(ValueError):
        privkey_to_wif(b"\x01" * 31)


def test_descriptors():
    assert taproot_descriptor("cWIF") == "tr(cWIF)"

    first, second = new_marker_descriptor(), new_marker_descriptor()
    assert first.startswith("tr(c") and first.endswith(")")
    assert first != second
