"""Key pairs and prekey generation.

X25519 is used for Diffie-Hellman (noise static, ephemeral and prekeys) and
Ed25519 for signatures (account identity, signed prekeys).
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .errors import CryptoError

KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

# Prefix marking a Curve25519 public key in signed prekey payloads.
DJB_TYPE = b"\x05"

MAX_PREKEY_ID = 0xFFFFFF


def _raw_private(key: X25519PrivateKey | Ed25519PrivateKey) -> bytes:
    return key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())


def _raw_public(key: X25519PublicKey | Ed25519PublicKey) -> bytes:
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)


@dataclass(frozen=True, slots=True)
class KeyPair:
    """X25519 key pair in raw 32-byte form."""

    private: bytes
    public: bytes

    @classmethod
    def generate(cls) -> KeyPair:
        key = X25519PrivateKey.generate()
        return cls(private=_raw_private(key), public=_raw_public(key.public_key()))

    @classmethod
    def from_private(cls, private: bytes) -> KeyPair:
        key = X25519PrivateKey.from_private_bytes(private)
        return cls(private=bytes(private), public=_raw_public(key.public_key()))

    def dh(self, peer_public: bytes) -> bytes:
        """Compute the shared secret with a peer public key.

        Raises:
            CryptoError: peer_public is malformed or a low-order point.
        """
        try:
            peer = X25519PublicKey.from_public_bytes(peer_public)
            return X25519PrivateKey.from_private_bytes(self.private).exchange(peer)
        except ValueError as err:
            raise CryptoError("invalid X25519 public key") from err

    def __repr__(self) -> str:
        return f"KeyPair(public={self.public.hex()[:16]}…)"


@dataclass(frozen=True, slots=True)
class SigningKeyPair:
    """Ed25519 key pair in raw 32-byte form."""

    private: bytes
    public: bytes

    @classmethod
    def generate(cls) -> SigningKeyPair:
        key = Ed25519PrivateKey.generate()
        return cls(private=_raw_private(key), public=_raw_public(key.public_key()))

    @classmethod
    def from_private(cls, private: bytes) -> SigningKeyPair:
        key = Ed25519PrivateKey.from_private_bytes(private)
        return cls(private=bytes(private), public=_raw_public(key.public_key()))

    def sign(self, message: bytes) -> bytes:
        return Ed25519PrivateKey.from_private_bytes(self.private).sign(message)

    def __repr__(self) -> str:
        return f"SigningKeyPair(public={self.public.hex()[:16]}…)"


def verify_signature(public: bytes, signature: bytes, message: bytes) -> bool:
    """Check an Ed25519 signature; malformed keys count as a failed check."""
    try:
        Ed25519PublicKey.from_public_bytes(public).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


@dataclass(frozen=True, slots=True)
class PreKey:
    """One-time prekey."""

    key_id: int
    key_pair: KeyPair


@dataclass(frozen=True, slots=True)
class SignedPreKey:
    """Medium-term prekey signed by the identity key."""

    key_id: int
    key_pair: KeyPair
    signature: bytes = field(repr=False)

    def verify(self, identity_public: bytes) -> bool:
        return verify_signature(
            identity_public, self.signature, DJB_TYPE + self.key_pair.public
        )


def generate_registration_id() -> int:
    """Random 14-bit registration id, never zero."""
    return secrets.randbelow(16380) + 1


def generate_signed_prekey(identity: SigningKeyPair, key_id: int) -> SignedPreKey:
    key_pair = KeyPair.generate()
    return SignedPreKey(
        key_id=key_id,
        key_pair=key_pair,
        signature=identity.sign(DJB_TYPE + key_pair.public),
    )


def generate_prekeys(start_id: int, count: int) -> list[PreKey]:
    """Generate count prekeys with ids starting at start_id.

    Ids wrap within 1..MAX_PREKEY_ID.
    """
    prekeys: list[PreKey] = []
    for offset in range(count):
        key_id = (start_id + offset - 1) % MAX_PREKEY_ID + 1
        prekeys.append(PreKey(key_id=key_id, key_pair=KeyPair.generate()))
    return prekeys
