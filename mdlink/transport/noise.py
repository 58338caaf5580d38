"""Noise XX handshake (X25519, AES-256-GCM, SHA-256) as the initiator.

Message flow over raw frames:

    -> e
    <- e, ee, s, es      (server payload: certificate chain)
    -> s, se             (client payload: login or registration data)

The server static key must be vouched for by a certificate chain rooted in
a pinned Ed25519 key. Any failure moves the handshake to FAILED; it is never
resumed and the caller must tear the connection down.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import CertificateError, CryptoError, FormatError, ProtocolError
from ..keys import KEY_LENGTH, KeyPair, verify_signature
from ..protobuf_util import (
    CertChain,
    CertDetails,
    HandshakeMessage,
    parse_message,
    serialize_message,
)
from .framing import CONN_HEADER

if TYPE_CHECKING:
    from .framing import FrameTransport

_LOGGER = logging.getLogger(__name__)

NOISE_MODE: Final = b"Noise_XX_25519_AESGCM_SHA256\x00\x00\x00\x00"
HASH_LENGTH: Final = 32
TAG_LENGTH: Final = 16
MAX_NONCE: Final = (1 << 64) - 1


def _nonce(counter: int) -> bytes:
    return b"\x00\x00\x00\x00" + counter.to_bytes(8, "big")


def _hkdf(chaining_key: bytes, input_key_material: bytes) -> tuple[bytes, bytes]:
    output = HKDF(
        algorithm=hashes.SHA256(),
        length=2 * HASH_LENGTH,
        salt=chaining_key,
        info=b"",
    ).derive(input_key_material)
    return output[:HASH_LENGTH], output[HASH_LENGTH:]


class CipherState:
    """AES-GCM key with a strictly increasing 64-bit nonce counter."""

    def __init__(self, key: bytes) -> None:
        self._key = bytearray(key)
        self._aead: AESGCM | None = AESGCM(bytes(key))
        self.nonce = 0

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            raise CryptoError("cipher state was destroyed")
        if self.nonce >= MAX_NONCE:
            raise CryptoError("nonce space exhausted")
        return self._aead

    def encrypt_with_ad(self, ad: bytes, plaintext: bytes) -> bytes:
        ciphertext = self._cipher().encrypt(_nonce(self.nonce), plaintext, ad)
        self.nonce += 1
        return ciphertext

    def decrypt_with_ad(self, ad: bytes, ciphertext: bytes) -> bytes:
        """Decrypt under the current nonce; the counter only advances on success."""
        try:
            plaintext = self._cipher().decrypt(_nonce(self.nonce), ciphertext, ad)
        except InvalidTag as err:
            raise CryptoError(f"authentication failed at nonce {self.nonce}") from err
        self.nonce += 1
        return plaintext

    def destroy(self) -> None:
        self._key[:] = bytes(len(self._key))
        self._aead = None


class SymmetricState:
    """Running handshake hash and chaining key."""

    def __init__(self, protocol_name: bytes = NOISE_MODE) -> None:
        if len(protocol_name) <= HASH_LENGTH:
            initial = protocol_name.ljust(HASH_LENGTH, b"\x00")
        else:
            initial = hashlib.sha256(protocol_name).digest()
        self._h = bytearray(initial)
        self._ck = bytearray(initial)
        self._cipher: CipherState | None = None

    @property
    def handshake_hash(self) -> bytes:
        return bytes(self._h)

    def mix_hash(self, data: bytes) -> None:
        self._h[:] = hashlib.sha256(bytes(self._h) + data).digest()

    def mix_key(self, input_key_material: bytes) -> None:
        chaining_key, temp_key = _hkdf(bytes(self._ck), input_key_material)
        self._ck[:] = chaining_key
        if self._cipher is not None:
            self._cipher.destroy()
        self._cipher = CipherState(temp_key)

    def encrypt_and_hash(self, plaintext: bytes) -> bytes:
        if self._cipher is None:
            ciphertext = plaintext
        else:
            ciphertext = self._cipher.encrypt_with_ad(bytes(self._h), plaintext)
        self.mix_hash(ciphertext)
        return ciphertext

    def decrypt_and_hash(self, ciphertext: bytes) -> bytes:
        if self._cipher is None:
            plaintext = ciphertext
        else:
            plaintext = self._cipher.decrypt_with_ad(bytes(self._h), ciphertext)
        self.mix_hash(ciphertext)
        return plaintext

    def split(self) -> tuple[CipherState, CipherState]:
        """Derive the (initiator, responder) transport ciphers."""
        first, second = _hkdf(bytes(self._ck), b"")
        return CipherState(first), CipherState(second)

    def destroy(self) -> None:
        self._h[:] = bytes(len(self._h))
        self._ck[:] = bytes(len(self._ck))
        if self._cipher is not None:
            self._cipher.destroy()
            self._cipher = None


@dataclass(slots=True)
class TransportKeys:
    """Directional transport ciphers produced by a completed handshake."""

    send: CipherState
    recv: CipherState
    remote_static: bytes

    def destroy(self) -> None:
        self.send.destroy()
        self.recv.destroy()


class EphemeralKey:
    """Handshake ephemeral X25519 key whose private half can be wiped."""

    def __init__(self, key_pair: KeyPair) -> None:
        self._private = bytearray(key_pair.private)
        self.public = key_pair.public

    @classmethod
    def generate(cls) -> EphemeralKey:
        return cls(KeyPair.generate())

    @property
    def destroyed(self) -> bool:
        return not any(self._private)

    def dh(self, peer_public: bytes) -> bytes:
        if self.destroyed:
            raise CryptoError("ephemeral key was destroyed")
        return KeyPair(private=bytes(self._private), public=self.public).dh(peer_public)

    def destroy(self) -> None:
        self._private[:] = bytes(len(self._private))


class HandshakeState(Enum):
    INIT = "init"
    SENT_HELLO = "sent_hello"
    RECEIVED_SERVER_HELLO = "received_server_hello"
    SENT_CLIENT_FINISH = "sent_client_finish"
    ESTABLISHED = "established"
    FAILED = "failed"


# -------------------------------------------------------------------------
# Certificate chain
# -------------------------------------------------------------------------


def _check_validity(details: CertDetails, now: float, name: str) -> None:
    if details.not_before and now < details.not_before:
        raise CertificateError(f"{name} certificate is not yet valid")
    if details.not_after and now > details.not_after:
        raise CertificateError(f"{name} certificate has expired")


def verify_cert_chain(
    payload: bytes,
    server_static: bytes,
    root_public_key: bytes,
    now: float,
) -> CertDetails:
    """Verify the server's certificate chain and return the leaf details.

    Raises:
        CertificateError: the chain is malformed, not rooted in
            root_public_key, or does not certify server_static.
    """
    try:
        chain = parse_message(CertChain, payload)
        intermediate = parse_message(CertDetails, chain.intermediate.details)
        leaf = parse_message(CertDetails, chain.leaf.details)
    except FormatError as err:
        raise CertificateError("malformed certificate chain") from err
    if not chain.HasField("leaf") or not chain.HasField("intermediate"):
        raise CertificateError("certificate chain is incomplete")

    if not verify_signature(
        root_public_key, chain.intermediate.signature, chain.intermediate.details
    ):
        raise CertificateError("intermediate certificate is not signed by the pinned root")
    if not verify_signature(intermediate.key, chain.leaf.signature, chain.leaf.details):
        raise CertificateError("leaf certificate is not signed by the intermediate")
    if leaf.issuer_serial != intermediate.serial:
        raise CertificateError("leaf issuer does not match intermediate serial")
    if not hmac.compare_digest(leaf.key, server_static):
        raise CertificateError("leaf certificate does not certify the server static key")

    _check_validity(intermediate, now, "intermediate")
    _check_validity(leaf, now, "leaf")
    return leaf


# -------------------------------------------------------------------------
# Handshake
# -------------------------------------------------------------------------


class NoiseHandshake:
    """Runs one initiator handshake over a FrameTransport.

    Usage:
        handshake = NoiseHandshake(transport, identity.noise_key, root_key)
        keys = await handshake.perform(client_payload)
        transport.establish(keys)
    """

    def __init__(
        self,
        transport: FrameTransport,
        static_key: KeyPair,
        root_public_key: bytes,
        *,
        prologue: bytes = CONN_HEADER,
        clock: Callable[[], float] = time.time,
        label: str = "unpaired",
    ) -> None:
        self._transport = transport
        self._static_key = static_key
        self._root_public_key = root_public_key
        self._prologue = prologue
        self._clock = clock
        self._label = label
        self._state = HandshakeState.INIT

    @property
    def state(self) -> HandshakeState:
        return self._state

    def _set_state(self, state: HandshakeState) -> None:
        if self._state != state:
            _LOGGER.debug(
                "[%s] Handshake: %s → %s", self._label, self._state.value, state.value
            )
            self._state = state

    async def perform(self, client_payload: bytes) -> TransportKeys:
        """Run the handshake and return the transport keys.

        Raises:
            CertificateError: the server chain failed verification.
            CryptoError: a MAC, key or signature check failed.
            FormatError: a handshake message could not be parsed.
            ProtocolError: a handshake message is missing required parts.
            TransportError: the stream failed.
        """
        if self._state is not HandshakeState.INIT:
            raise ProtocolError(f"handshake already run (state {self._state.value})")

        symmetric = SymmetricState(NOISE_MODE)
        ephemeral = EphemeralKey.generate()
        try:
            symmetric.mix_hash(self._prologue)
            keys = await self._run(symmetric, ephemeral, client_payload)
            self._set_state(HandshakeState.ESTABLISHED)
            return keys
        finally:
            symmetric.destroy()
            ephemeral.destroy()
            if self._state is not HandshakeState.ESTABLISHED:
                self._set_state(HandshakeState.FAILED)

    async def _run(
        self,
        symmetric: SymmetricState,
        ephemeral: EphemeralKey,
        client_payload: bytes,
    ) -> TransportKeys:
        # -> e
        symmetric.mix_hash(ephemeral.public)
        hello = HandshakeMessage()
        hello.client_hello.ephemeral = ephemeral.public
        await self._transport.send_frame(serialize_message(hello))
        self._set_state(HandshakeState.SENT_HELLO)

        # <- e, ee, s, es
        response = parse_message(HandshakeMessage, await self._transport.receive_frame())
        if not response.HasField("server_hello"):
            raise ProtocolError("expected server hello")
        server_hello = response.server_hello
        server_ephemeral = server_hello.ephemeral
        if len(server_ephemeral) != KEY_LENGTH:
            raise ProtocolError("server ephemeral key has the wrong length")
        if len(server_hello.static) != KEY_LENGTH + TAG_LENGTH or not server_hello.payload:
            raise ProtocolError("server hello is missing static key or payload")

        symmetric.mix_hash(server_ephemeral)
        symmetric.mix_key(ephemeral.dh(server_ephemeral))
        server_static = symmetric.decrypt_and_hash(server_hello.static)
        symmetric.mix_key(ephemeral.dh(server_static))
        cert_payload = symmetric.decrypt_and_hash(server_hello.payload)
        verify_cert_chain(cert_payload, server_static, self._root_public_key, self._clock())
        self._set_state(HandshakeState.RECEIVED_SERVER_HELLO)

        # -> s, se
        finish = HandshakeMessage()
        finish.client_finish.static = symmetric.encrypt_and_hash(self._static_key.public)
        symmetric.mix_key(self._static_key.dh(server_ephemeral))
        finish.client_finish.payload = symmetric.encrypt_and_hash(client_payload)
        await self._transport.send_frame(serialize_message(finish))
        self._set_state(HandshakeState.SENT_CLIENT_FINISH)

        send, recv = symmetric.split()
        _LOGGER.debug("[%s] Handshake complete", self._label)
        return TransportKeys(send=send, recv=recv, remote_static=server_static)
