from __future__ import annotations

"""Owner wallets and the ECIES-style metadata cipher."""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

EPHEMERAL_KEY_LENGTH = 65


@dataclass
class Wallet:
    """A secp256k1 signing key owned by the operator or an agent."""

    private_key: ec.EllipticCurvePrivateKey = field(repr=False)

    @classmethod
    def generate(cls) -> "Wallet":
        return cls(private_key=ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "Wallet":
        text = private_key_hex[2:] if private_key_hex.startswith("0x") else private_key_hex
        secret = int(text, 16)
        return cls(private_key=ec.derive_private_key(secret, ec.SECP256K1()))

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    @property
    def public_key_bytes(self) -> bytes:
        """Uncompressed SEC1 encoding (65 bytes, 0x04 prefix)."""
        return self.public_key.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )

    @property
    def principal(self) -> bytes:
        """Compressed public key, used as the owner salt for id generation."""
        return self.public_key.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )


class MetadataCipher(Protocol):
    def encrypt(self, plaintext: bytes, wallet: Wallet) -> bytes: ...

    def decrypt(self, ciphertext: bytes, wallet: Wallet) -> bytes: ...


def _keystream(shared_secret: bytes, length: int) -> bytes:
    blocks = []
    produced = 0
    counter = 0
    while produced < length:
        block = hashlib.sha256(shared_secret + counter.to_bytes(4, "big")).digest()
        blocks.append(block)
        produced += len(block)
        counter += 1
    return b"".join(blocks)[:length]


def _xor(data: bytes, stream: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, stream))


class EciesCipher:
    """
    ECIES-like envelope over the owner's secp256k1 key.

    Layout: ephemeral public key (65 bytes, uncompressed) followed by the
    plaintext XORed with a SHA-256 counter-mode stream keyed by the ECDH
    shared secret.
    """

    def encrypt(self, plaintext: bytes, wallet: Wallet) -> bytes:
        ephemeral = ec.generate_private_key(ec.SECP256K1())
        shared = ephemeral.exchange(ec.ECDH(), wallet.public_key)
        ephemeral_public = ephemeral.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )
        body = _xor(plaintext, _keystream(shared, len(plaintext)))
        return ephemeral_public + body

    def decrypt(self, ciphertext: bytes, wallet: Wallet) -> bytes:
        if len(ciphertext) < EPHEMERAL_KEY_LENGTH:
            raise ValueError("Ciphertext is shorter than the ephemeral key prefix")
        ephemeral_public = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), ciphertext[:EPHEMERAL_KEY_LENGTH]
        )
        shared = wallet.private_key.exchange(ec.ECDH(), ephemeral_public)
        body = ciphertext[EPHEMERAL_KEY_LENGTH:]
        return _xor(body, _keystream(shared, len(body)))
