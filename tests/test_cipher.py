import os

import pytest

from nibble.engine.identity import ID_LENGTH, from_hex, generate_id
from nibble.services.cipher import EPHEMERAL_KEY_LENGTH, EciesCipher, Wallet


@pytest.mark.parametrize("plaintext", [b"", b"x", b'{"nodes":[],"links":[]}', os.urandom(5000)])
def test_round_trip(wallet, plaintext):
    cipher = EciesCipher()
    ciphertext = cipher.encrypt(plaintext, wallet)

    assert len(ciphertext) == EPHEMERAL_KEY_LENGTH + len(plaintext)
    assert ciphertext[0] == 0x04
    assert cipher.decrypt(ciphertext, wallet) == plaintext


def test_encryption_is_randomized(wallet):
    cipher = EciesCipher()
    assert cipher.encrypt(b"same", wallet) != cipher.encrypt(b"same", wallet)


def test_other_wallet_gets_garbage(wallet):
    cipher = EciesCipher()
    ciphertext = cipher.encrypt(b"secret workflow", wallet)
    assert cipher.decrypt(ciphertext, Wallet.generate()) != b"secret workflow"


def test_truncated_ciphertext_is_rejected(wallet):
    with pytest.raises(ValueError):
        EciesCipher().decrypt(b"\x04" * 10, wallet)


def test_wallet_from_hex_is_deterministic():
    key = "0x" + "11" * 32
    assert Wallet.from_hex(key).principal == Wallet.from_hex(key[2:]).principal
    assert len(Wallet.from_hex(key).principal) == 33
    assert len(Wallet.from_hex(key).public_key_bytes) == 65


def test_generated_ids_are_unique(wallet):
    ids = {generate_id(wallet.principal) for _ in range(200)}
    assert len(ids) == 200
    assert all(len(i) == ID_LENGTH for i in ids)


def test_from_hex_accepts_prefix():
    assert from_hex("0x0a0b") == b"\x0a\x0b"
    with pytest.raises(ValueError):
        from_hex("not-hex")
