"""Single-use marker keys.

The marker output is locked to a fresh taproot key that only this tool knows;
its descriptor is stored in the checkpoint so the payout can be signed later.
"""

import secrets

import base58

MAINNET_WIF_PREFIX = b"\x80"
TESTNET_WIF_PREFIX = b"\xef"


def create_random_privkey() -> bytes:
    """32 random bytes for a secp256k1 private key"""
    return secrets.token_bytes(32)


def privkey_to_wif(privkey: bytes, compressed: bool = True, testnet: bool = True) -> str:
    """Encode a raw private key as Wallet Import Format (base58check)"""
    if len(privkey) != 32:
        raise ValueError(f"Private key must be 32 bytes, got {len(privkey)}")

    prefix = TESTNET_WIF_PREFIX if testnet else MAINNET_WIF_PREFIX
    payload = prefix + privkey
    if compressed:
        payload += b"\x01"
    return base58.b58encode_check(payload).decode()


def taproot_descriptor(wif: str) -> str:
    # Without checksum; bitcoind's getdescriptorinfo adds it
    return f"tr({wif})"


def new_marker_descriptor(testnet: bool = True) -> str:
    return taproot_descriptor(privkey_to_wif(create_random_privkey(), testnet=testnet))
