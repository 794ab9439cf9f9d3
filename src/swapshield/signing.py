"""Transaction signing for Solana swap transactions.

Aggregator and venue APIs return serialized, unsigned transactions with
64-byte zero placeholders for each required signature. The signer finds
its own slot among the message's signer keys, signs the message bytes
with ed25519 and writes the signature into that slot.

Wire layout (legacy and v0):
- compact-u16 signature count, then 64 bytes per signature
- message: [0x80 | version] for v0, then header (3 bytes),
  compact-u16 account-key count, 32 bytes per key, ...
"""

import base64
import logging
from abc import ABC, abstractmethod

import base58
from nacl.signing import SigningKey

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32


class SigningError(Exception):
    """Exception raised when a transaction cannot be signed."""
    pass


def decode_shortvec(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a compact-u16 at ``offset``; returns (value, next offset)."""
    value = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise SigningError("Truncated compact-u16")
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7


def transaction_signature(signed_tx_base64: str) -> str:
    """Base58 first signature of a signed transaction (its transaction id)."""
    raw = base64.b64decode(signed_tx_base64)
    _, offset = decode_shortvec(raw, 0)
    return base58.b58encode(raw[offset:offset + SIGNATURE_LENGTH]).decode()


class Signer(ABC):
    """Signs serialized transactions for one wallet."""

    @property
    @abstractmethod
    def public_key(self) -> str:
        """Base58 wallet address."""
        pass

    @abstractmethod
    def sign_transaction(self, tx_base64: str) -> str:
        """Return the transaction with this wallet's signature applied."""
        pass


class KeypairSigner(Signer):
    """Ed25519 keypair held in memory (hot wallet)."""

    def __init__(self, secret: bytes):
        """Initialize from a 32-byte seed or a 64-byte seed+pubkey secret."""
        if len(secret) not in (32, 64):
            raise SigningError(f"Secret key must be 32 or 64 bytes, got {len(secret)}")
        self._signing_key = SigningKey(secret[:32])
        self._public_key_bytes = bytes(self._signing_key.verify_key)
        if len(secret) == 64 and secret[32:] != self._public_key_bytes:
            raise SigningError("Secret key does not match its embedded public key")

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        return cls(base58.b58decode(secret.strip()))

    @property
    def public_key(self) -> str:
        return base58.b58encode(self._public_key_bytes).decode()

    def sign_transaction(self, tx_base64: str) -> str:
        raw = bytearray(base64.b64decode(tx_base64))

        num_signatures, signatures_start = decode_shortvec(raw, 0)
        message_start = signatures_start + num_signatures * SIGNATURE_LENGTH
        message = bytes(raw[message_start:])
        if not message:
            raise SigningError("Transaction has no message")

        # v0 messages carry a version prefix byte before the header
        is_versioned = bool(message[0] & 0x80)
        header_start = 1 if is_versioned else 0
        num_required = message[header_start]
        key_count, keys_start = decode_shortvec(message, header_start + 3)

        signers = [
            message[keys_start + i * PUBKEY_LENGTH: keys_start + (i + 1) * PUBKEY_LENGTH]
            for i in range(min(key_count, num_required, num_signatures))
        ]
        try:
            index = signers.index(self._public_key_bytes)
        except ValueError:
            raise SigningError(f"{self.public_key} is not a required signer of this transaction")

        signature = self._signing_key.sign(message).signature
        slot = signatures_start + index * SIGNATURE_LENGTH
        raw[slot:slot + SIGNATURE_LENGTH] = signature

        logger.debug(f"Transaction signed (versioned={is_versioned}, slot={index})")
        return base64.b64encode(bytes(raw)).decode()
