"""Base58Check, hash160, and P2PKH address helpers for BSV.

Only the single-key pay-to-public-key-hash template is supported: an address
is the Base58Check encoding of ``version || RIPEMD160(SHA256(pubkey))``.
"""

from __future__ import annotations

import binascii
import hashlib
from typing import List, Tuple

from Crypto.Hash import RIPEMD160

b58_digits = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

NETWORK_VERSIONS = {
    "main": {"p2pkh": 0x00, "wif": 0x80},
    "test": {"p2pkh": 0x6F, "wif": 0xEF},
}

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC


class AddressError(ValueError):
    """Raised when an address or WIF string fails to decode."""


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def network_versions(network: str) -> dict[str, int]:
    try:
        return NETWORK_VERSIONS[network]
    except KeyError as exc:
        raise AddressError(f"Unknown network: {network}") from exc


def base58_check_encode(payload: bytes, version: int) -> str:
    """Encode ``payload`` with a one-byte ``version`` prefix and checksum."""

    data = bytes([version]) + payload
    address_bytes = data + double_sha256(data)[:4]

    value = int("0x0" + binascii.hexlify(address_bytes).decode("utf8"), 16)

    output: List[str] = []
    while value > 0:
        value, remainder = divmod(value, 58)
        output.append(b58_digits[remainder])
    encoded = "".join(output[::-1])

    leading_zero_count = 0
    for byte in address_bytes:
        if byte == 0:
            leading_zero_count += 1
        else:
            break

    return b58_digits[0] * leading_zero_count + encoded


def base58_check_decode(value: str) -> Tuple[int, bytes]:
    """Decode a Base58Check string into ``(version, payload)``.

    Unlike a bare Base58 decode the four-byte checksum is verified.
    """

    if not value:
        raise AddressError("Empty Base58Check string")
    number = 0
    for character in value:
        index = b58_digits.find(character)
        if index == -1:
            raise AddressError(f"Invalid Base58 character: {character}")
        number = number * 58 + index

    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    padding = len(value) - len(value.lstrip(b58_digits[0]))
    raw = b"\x00" * padding + body
    if len(raw) < 5:
        raise AddressError("Base58Check string too short")

    data, checksum = raw[:-4], raw[-4:]
    if double_sha256(data)[:4] != checksum:
        raise AddressError(f"Checksum mismatch for {value}")
    return data[0], data[1:]


def pubkey_to_address(public_key: bytes, network: str = "main") -> str:
    return base58_check_encode(hash160(public_key), network_versions(network)["p2pkh"])


def address_to_pubkey_hash(address: str, network: str | None = None) -> bytes:
    version, payload = base58_check_decode(address)
    allowed = (
        {network_versions(network)["p2pkh"]}
        if network is not None
        else {versions["p2pkh"] for versions in NETWORK_VERSIONS.values()}
    )
    if version not in allowed or len(payload) != 20:
        raise AddressError(f"Not a P2PKH address: {address}")
    return payload


def is_valid_address(address: str, network: str | None = None) -> bool:
    try:
        address_to_pubkey_hash(address, network)
    except AddressError:
        return False
    return True


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """Locking script ``OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG``."""

    if len(pubkey_hash) != 20:
        raise AddressError(f"P2PKH hash must be 20 bytes, got {len(pubkey_hash)}")
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def address_to_script(address: str, network: str | None = None) -> bytes:
    return p2pkh_script(address_to_pubkey_hash(address, network))


def encode_wif(secret: int, network: str = "main", compressed: bool = True) -> str:
    payload = secret.to_bytes(32, "big") + (b"\x01" if compressed else b"")
    return base58_check_encode(payload, network_versions(network)["wif"])


def decode_wif(wif: str) -> Tuple[int, str, bool]:
    """Return ``(secret, network, compressed)`` for a WIF private key."""

    version, payload = base58_check_decode(wif)
    network = next(
        (name for name, versions in NETWORK_VERSIONS.items() if versions["wif"] == version),
        None,
    )
    if network is None:
        raise AddressError(f"Unknown WIF version byte 0x{version:02x}")
    if len(payload) == 33 and payload[-1] == 0x01:
        return int.from_bytes(payload[:32], "big"), network, True
    if len(payload) == 32:
        return int.from_bytes(payload, "big"), network, False
    raise AddressError("Malformed WIF payload")
