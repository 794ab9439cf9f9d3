"""Tests for transaction signing."""

import base58
import pytest
from nacl.signing import SigningKey, VerifyKey

from swapshield.signing import (
    KeypairSigner,
    SigningError,
    decode_shortvec,
    transaction_signature,
)

from fakes import build_unsigned_tx, split_transaction

SEED = bytes(range(32))


@pytest.fixture
def keypair():
    return KeypairSigner(SEED)


@pytest.fixture
def public_key_bytes():
    return bytes(SigningKey(SEED).verify_key)


class TestShortVec:
    """Tests for compact-u16 decoding."""

    def test_single_byte(self):
        assert decode_shortvec(bytes([5, 9]), 0) == (5, 1)

    def test_multi_byte(self):
        """Test values above 127 span several bytes."""
        assert decode_shortvec(bytes([0x80, 0x01]), 0) == (128, 2)
        assert decode_shortvec(bytes([0xFF, 0xFF, 0x03]), 0) == (0xFFFF, 3)

    def test_truncated(self):
        with pytest.raises(SigningError):
            decode_shortvec(bytes([0x80]), 0)


class TestKeypairSigner:
    """Tests for KeypairSigner."""

    def test_public_key(self, keypair, public_key_bytes):
        """Test the address is the base58 verify key."""
        assert keypair.public_key == base58.b58encode(public_key_bytes).decode()

    def test_sign_legacy_transaction(self, keypair, public_key_bytes):
        """Test the signature slot holds a valid signature of the message."""
        signed = keypair.sign_transaction(build_unsigned_tx(public_key_bytes))

        signatures, message = split_transaction(signed)
        assert len(signatures) == 1
        VerifyKey(public_key_bytes).verify(message, signatures[0])

    def test_sign_versioned_transaction(self, keypair, public_key_bytes):
        """Test v0 messages skip the version prefix when locating signers."""
        signed = keypair.sign_transaction(build_unsigned_tx(public_key_bytes, versioned=True))

        signatures, message = split_transaction(signed)
        assert message[0] == 0x80
        VerifyKey(public_key_bytes).verify(message, signatures[0])

    def test_sign_second_slot(self, keypair, public_key_bytes):
        """Test only the wallet's own slot is filled."""
        co_signer = bytes([9]) * 32
        signed = keypair.sign_transaction(
            build_unsigned_tx(public_key_bytes, co_signer=co_signer)
        )

        signatures, message = split_transaction(signed)
        assert signatures[0] == bytes(64)
        VerifyKey(public_key_bytes).verify(message, signatures[1])

    def test_message_untouched(self, keypair, public_key_bytes):
        """Test signing only writes the signature section."""
        unsigned = build_unsigned_tx(public_key_bytes, nonce=42)
        signed = keypair.sign_transaction(unsigned)

        assert split_transaction(signed)[1] == split_transaction(unsigned)[1]

    def test_not_a_signer(self, keypair):
        """Test a transaction for another wallet is rejected."""
        other = bytes(SigningKey(bytes(32)).verify_key)

        with pytest.raises(SigningError):
            keypair.sign_transaction(build_unsigned_tx(other))

    def test_transaction_signature(self, keypair, public_key_bytes):
        """Test the transaction id is the base58 first signature."""
        signed = keypair.sign_transaction(build_unsigned_tx(public_key_bytes))

        signatures, _ = split_transaction(signed)
        assert transaction_signature(signed) == base58.b58encode(signatures[0]).decode()

    def test_signing_is_deterministic(self, keypair, public_key_bytes):
        """Test re-signing the same payload gives the same id."""
        unsigned = build_unsigned_tx(public_key_bytes)

        assert keypair.sign_transaction(unsigned) == keypair.sign_transaction(unsigned)

    def test_64_byte_secret(self, public_key_bytes):
        """Test the seed+pubkey form is accepted."""
        signer = KeypairSigner(SEED + public_key_bytes)
        assert signer.public_key == base58.b58encode(public_key_bytes).decode()

    def test_mismatched_secret(self):
        """Test a seed paired with the wrong public key is rejected."""
        with pytest.raises(SigningError):
            KeypairSigner(SEED + bytes(32))

    def test_bad_length(self):
        with pytest.raises(SigningError):
            KeypairSigner(bytes(16))

    def test_from_base58(self, public_key_bytes):
        """Test loading the configured wallet secret."""
        secret = base58.b58encode(SEED + public_key_bytes).decode()

        signer = KeypairSigner.from_base58(f" {secret}\n")

        assert signer.public_key == base58.b58encode(public_key_bytes).decode()
