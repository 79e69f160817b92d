from __future__ import annotations

import json
from pathlib import Path

import pytest

from microagent_bsv.keys import (
    AddressError,
    address_to_pubkey_hash,
    address_to_script,
    base58_check_decode,
    base58_check_encode,
    decode_wif,
    encode_wif,
    hash160,
    is_valid_address,
)
from microagent_bsv.wallet import Wallet, WalletError, load_or_create_wallet, verify_digest

SECRET_ONE_PUBKEY = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
SECRET_ONE_ADDRESS = "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
SECRET_ONE_WIF = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"


def test_hash160_of_generator_point() -> None:
    assert hash160(bytes.fromhex(SECRET_ONE_PUBKEY)).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


def test_wallet_from_secret_derives_known_address() -> None:
    wallet = Wallet.from_secret(1)

    assert wallet.public_key.hex() == SECRET_ONE_PUBKEY
    assert wallet.address == SECRET_ONE_ADDRESS
    assert wallet.to_wif() == SECRET_ONE_WIF


def test_wif_decoding() -> None:
    assert decode_wif(SECRET_ONE_WIF) == (1, "main", True)
    assert Wallet.from_wif(SECRET_ONE_WIF).address == SECRET_ONE_ADDRESS


def test_testnet_wallet_uses_testnet_prefixes() -> None:
    wallet = Wallet.from_secret(1, network="test")

    assert wallet.address[0] in "mn"
    assert decode_wif(encode_wif(1, "test")) == (1, "test", True)
    assert Wallet.from_wif(wallet.to_wif()).address == wallet.address


def test_base58_check_preserves_leading_zeros() -> None:
    encoded = base58_check_encode(b"\x00\x00\x01", 0x00)

    assert encoded.startswith("111")
    assert base58_check_decode(encoded) == (0x00, b"\x00\x00\x01")


def test_base58_check_rejects_bad_checksum() -> None:
    tampered = SECRET_ONE_ADDRESS[:-1] + ("J" if SECRET_ONE_ADDRESS[-1] != "J" else "K")

    with pytest.raises(AddressError):
        base58_check_decode(tampered)
    assert not is_valid_address(tampered)


def test_address_validation() -> None:
    assert is_valid_address(SECRET_ONE_ADDRESS)
    assert is_valid_address(SECRET_ONE_ADDRESS, "main")
    assert not is_valid_address(SECRET_ONE_ADDRESS, "test")
    assert not is_valid_address("0OIl")
    assert not is_valid_address(SECRET_ONE_WIF)


def test_address_to_script_is_p2pkh() -> None:
    script = address_to_script(SECRET_ONE_ADDRESS)

    assert script.hex() == "76a914751e76e8199196d454941c45d1b3a323f1433bd688ac"
    assert address_to_pubkey_hash(SECRET_ONE_ADDRESS).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


def test_signatures_are_low_s_and_verify() -> None:
    wallet = Wallet.from_secret(12345)
    digest = bytes(range(32))

    signature = wallet.sign_digest(digest)

    assert verify_digest(wallet.public_key, signature, digest)
    assert not verify_digest(wallet.public_key, signature, bytes(32))
    s_length = signature[5 + signature[3]]
    s_value = int.from_bytes(signature[6 + signature[3] : 6 + signature[3] + s_length], "big")
    assert s_value <= 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141 // 2


def test_out_of_range_secret_rejected() -> None:
    with pytest.raises(WalletError):
        Wallet.from_secret(0)


def test_load_or_create_wallet_persists_once(tmp_path: Path) -> None:
    path = tmp_path / "agent" / "wallet.json"

    created = load_or_create_wallet(path)
    loaded = load_or_create_wallet(path)

    assert loaded.address == created.address
    assert json.loads(path.read_text())["address"] == created.address
    assert path.stat().st_mode & 0o777 == 0o600


def test_load_wallet_rejects_mismatched_address(tmp_path: Path) -> None:
    path = tmp_path / "wallet.json"
    path.write_text(json.dumps({"wif": SECRET_ONE_WIF, "address": Wallet.from_secret(2).address}))

    with pytest.raises(WalletError):
        load_or_create_wallet(path)


def test_load_wallet_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "wallet.json"
    path.write_text("not json")

    with pytest.raises(WalletError):
        load_or_create_wallet(path)
