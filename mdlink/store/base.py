"""Storage contract for identity, peer session and prekey material.

The protocol engine reads and writes through this interface only, so
in-memory and persistent backends are interchangeable. Writes that belong to
one logical identity (pairing, prekey rotation) are serialized by holding
identity_lock() around them.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Protocol

from ..jid import JID
from ..keys import (
    KeyPair,
    PreKey,
    SignedPreKey,
    SigningKeyPair,
    generate_registration_id,
    generate_signed_prekey,
)

ADV_SECRET_LENGTH = 32


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Cryptographic material identifying one paired device.

    Instances are immutable; prekey rotation produces a new instance with
    with_signed_prekey() that the caller persists explicitly.

    Attributes:
        noise_key: Static X25519 key used in the transport handshake.
        identity_key: Ed25519 account identity key.
        registration_id: Random 14-bit id announced at registration.
        adv_secret: Secret shared with the primary device through the QR code.
        signed_prekey: Current signed prekey.
        jid: Device address assigned at pairing; None before pairing.
        lid: Hidden-user address assigned at pairing, when provided.
        account: Serialized signed device identity confirmed at pairing.
        platform: Platform name of the primary device.
        business_name: Business name from pairing, empty for personal accounts.
        next_prekey_id: Id the next generated one-time prekey receives.
    """

    noise_key: KeyPair
    identity_key: SigningKeyPair
    registration_id: int
    adv_secret: bytes = field(repr=False)
    signed_prekey: SignedPreKey
    jid: JID | None = None
    lid: JID | None = None
    account: bytes | None = field(default=None, repr=False)
    platform: str = ""
    business_name: str = ""
    next_prekey_id: int = 1

    @classmethod
    def generate(cls) -> DeviceIdentity:
        """Fresh unpaired key material."""
        identity_key = SigningKeyPair.generate()
        return cls(
            noise_key=KeyPair.generate(),
            identity_key=identity_key,
            registration_id=generate_registration_id(),
            adv_secret=secrets.token_bytes(ADV_SECRET_LENGTH),
            signed_prekey=generate_signed_prekey(identity_key, 1),
        )

    @property
    def is_paired(self) -> bool:
        return self.jid is not None

    def with_signed_prekey(self, signed_prekey: SignedPreKey) -> DeviceIdentity:
        return replace(self, signed_prekey=signed_prekey)

    def with_next_prekey_id(self, next_prekey_id: int) -> DeviceIdentity:
        return replace(self, next_prekey_id=next_prekey_id)


@dataclass(slots=True)
class Session:
    """Opaque end-to-end session record kept for one peer."""

    peer: str
    record: bytes


class SessionCipher(Protocol):
    """Per-peer end-to-end encryption provided by an external component."""

    def encrypt(self, plaintext: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> bytes: ...


class Store(ABC):
    """Keyed storage for one device identity and its peer sessions."""

    def __init__(self) -> None:
        self._identity_lock = asyncio.Lock()

    def identity_lock(self) -> asyncio.Lock:
        """Lock serializing writes for this store's identity."""
        return self._identity_lock

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_identity(self) -> DeviceIdentity | None:
        """Return the persisted identity, or None before pairing."""

    @abstractmethod
    async def put_identity(self, identity: DeviceIdentity) -> None:
        """Persist identity, replacing any previous one."""

    @abstractmethod
    async def delete_identity(self) -> None:
        """Remove the identity along with its sessions and prekeys."""

    # -------------------------------------------------------------------------
    # Peer sessions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_session(self, peer: str) -> Session | None: ...

    @abstractmethod
    async def put_session(self, peer: str, session: Session) -> None: ...

    # -------------------------------------------------------------------------
    # Prekeys
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_prekeys(self) -> list[PreKey]:
        """Return unused one-time prekeys ordered by id."""

    @abstractmethod
    async def put_prekeys(self, prekeys: list[PreKey]) -> None: ...

    @abstractmethod
    async def remove_prekey(self, key_id: int) -> None:
        """Drop a consumed prekey; unknown ids are ignored."""
