"""Single-key wallet owned by the agent process."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .keys import AddressError, decode_wif, encode_wif, pubkey_to_address

logger = logging.getLogger(__name__)

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class WalletError(RuntimeError):
    """Raised when the wallet key cannot be created, loaded, or used."""


@dataclass(frozen=True)
class Wallet:
    """Key pair plus its derived P2PKH address."""

    private_key: ec.EllipticCurvePrivateKey
    public_key: bytes
    address: str
    network: str = "main"

    @classmethod
    def generate(cls, network: str = "main") -> "Wallet":
        return cls.from_private_key(ec.generate_private_key(ec.SECP256K1()), network)

    @classmethod
    def from_secret(cls, secret: int, network: str = "main") -> "Wallet":
        if not 0 < secret < SECP256K1_ORDER:
            raise WalletError("Private key scalar is out of range")
        return cls.from_private_key(ec.derive_private_key(secret, ec.SECP256K1()), network)

    @classmethod
    def from_private_key(
        cls, private_key: ec.EllipticCurvePrivateKey, network: str = "main"
    ) -> "Wallet":
        public_key = private_key.public_key().public_bytes(
            Encoding.X962, PublicFormat.CompressedPoint
        )
        return cls(
            private_key=private_key,
            public_key=public_key,
            address=pubkey_to_address(public_key, network),
            network=network,
        )

    @classmethod
    def from_wif(cls, wif: str) -> "Wallet":
        try:
            secret, network, compressed = decode_wif(wif)
        except AddressError as exc:
            raise WalletError(f"Invalid WIF private key: {exc}") from exc
        if not compressed:
            raise WalletError("Uncompressed WIF keys are not supported")
        return cls.from_secret(secret, network)

    @property
    def secret(self) -> int:
        return self.private_key.private_numbers().private_value

    def to_wif(self) -> str:
        return encode_wif(self.secret, self.network)

    def sign_digest(self, digest: bytes) -> bytes:
        """Return a low-S DER ECDSA signature over a 32-byte digest."""

        der = self.private_key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        if s > SECP256K1_ORDER // 2:
            s = SECP256K1_ORDER - s
        return encode_dss_signature(r, s)


def verify_digest(public_key: bytes, signature_der: bytes, digest: bytes) -> bool:
    """Check a DER signature over ``digest`` against a SEC1-encoded key."""

    try:
        key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        key.verify(signature_der, digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    except (InvalidSignature, ValueError):
        return False
    return True


def is_valid_public_key(public_key: bytes) -> bool:
    if len(public_key) not in (33, 65):
        return False
    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    except ValueError:
        return False
    return True


def load_or_create_wallet(path: str | Path, network: str = "main") -> Wallet:
    """Load ``wallet.json`` at ``path`` or create and persist a new key.

    The stored address must match the one derived from the stored key.
    """

    wallet_path = Path(path)
    if wallet_path.exists():
        try:
            data = json.loads(wallet_path.read_text())
            wif = data["wif"]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise WalletError(f"Unreadable wallet file {wallet_path}: {exc}") from exc
        wallet = Wallet.from_wif(wif)
        stored = data.get("address")
        if stored and stored != wallet.address:
            raise WalletError(
                f"Wallet file {wallet_path} address {stored} does not match its key ({wallet.address})"
            )
        return wallet

    wallet = Wallet.generate(network)
    wallet_path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps({"wif": wallet.to_wif(), "address": wallet.address}, indent=2)
    fd = os.open(wallet_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(payload)
    logger.info("NEW WALLET CREATED: %s", wallet.address)
    return wallet
