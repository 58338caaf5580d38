"""Pytest configuration and fixtures for mdlink tests."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time

import pytest

from mdlink.binary import Node, node, pack, unpack
from mdlink.errors import TransportError
from mdlink.keys import KeyPair, SigningKeyPair
from mdlink.protobuf_util import (
    CertChain,
    CertDetails,
    DeviceIdentityDetails,
    DeviceIdentityHmac,
    HandshakeMessage,
    SignedDeviceIdentity,
    parse_message,
    serialize_message,
)
from mdlink.store import DeviceIdentity
from mdlink.transport.framing import CONN_HEADER, encode_frame
from mdlink.transport.noise import NOISE_MODE, CipherState, SymmetricState


# -------------------------------------------------------------------------
# In-memory duplex byte stream
# -------------------------------------------------------------------------


class MemoryStream:
    """One end of an in-memory duplex byte pipe."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.peer: MemoryStream | None = None
        self.sent: list[bytes] = []
        self.closed = False

    async def send_bytes(self, data: bytes) -> None:
        if self.closed or self.peer is None or self.peer.closed:
            raise TransportError("stream closed")
        self.sent.append(data)
        self.peer.inbox.put_nowait(data)

    async def receive_bytes(self) -> bytes:
        data = await self.inbox.get()
        if data is None:
            self.inbox.put_nowait(None)
            raise TransportError("stream closed")
        return data

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.inbox.put_nowait(None)
        if self.peer is not None:
            self.peer.inbox.put_nowait(None)


def make_pipe() -> tuple[MemoryStream, MemoryStream]:
    """Return (client end, server end) of a connected pipe."""
    client, server = MemoryStream(), MemoryStream()
    client.peer, server.peer = server, client
    return client, server


class ServerFramer:
    """Server side of the framing: strips the header, reads length-prefixed frames."""

    def __init__(self, stream: MemoryStream, *, expect_header: bool = True) -> None:
        self.stream = stream
        self._buffer = bytearray()
        self._header_pending = expect_header

    async def _read_exactly(self, length: int) -> bytes:
        while len(self._buffer) < length:
            self._buffer += await self.stream.receive_bytes()
        chunk = bytes(self._buffer[:length])
        del self._buffer[:length]
        return chunk

    async def read_frame(self) -> bytes:
        if self._header_pending:
            header = await self._read_exactly(len(CONN_HEADER))
            assert header == CONN_HEADER
            self._header_pending = False
        length = int.from_bytes(await self._read_exactly(3), "big")
        return await self._read_exactly(length)

    async def write_frame(self, payload: bytes) -> None:
        await self.stream.send_bytes(encode_frame(payload))


# -------------------------------------------------------------------------
# Certificates
# -------------------------------------------------------------------------


def make_cert_chain(
    root: SigningKeyPair,
    server_static_public: bytes,
    *,
    intermediate: SigningKeyPair | None = None,
    intermediate_serial: int = 7,
    leaf_issuer_serial: int | None = None,
    not_after: int | None = None,
) -> bytes:
    """Serialized CertChain certifying server_static_public under root."""
    intermediate = intermediate or SigningKeyPair.generate()
    expiry = not_after if not_after is not None else int(time.time()) + 3600

    intermediate_details = CertDetails(
        serial=intermediate_serial,
        issuer_serial=0,
        key=intermediate.public,
        not_before=0,
        not_after=expiry,
    )
    leaf_details = CertDetails(
        serial=intermediate_serial + 1,
        issuer_serial=(
            intermediate_serial if leaf_issuer_serial is None else leaf_issuer_serial
        ),
        key=server_static_public,
        not_after=expiry,
    )
    chain = CertChain()
    chain.intermediate.details = serialize_message(intermediate_details)
    chain.intermediate.signature = root.sign(chain.intermediate.details)
    chain.leaf.details = serialize_message(leaf_details)
    chain.leaf.signature = intermediate.sign(chain.leaf.details)
    return serialize_message(chain)


# -------------------------------------------------------------------------
# Scripted noise responder
# -------------------------------------------------------------------------


class NoiseResponder:
    """Server half of the XX handshake, driven step by step from tests."""

    def __init__(
        self,
        stream: MemoryStream,
        static_key: KeyPair,
        cert_payload: bytes,
        *,
        tamper_ephemeral: bool = False,
    ) -> None:
        self.framer = ServerFramer(stream)
        self.static_key = static_key
        self.cert_payload = cert_payload
        self.tamper_ephemeral = tamper_ephemeral
        self.client_static: bytes | None = None
        self.client_payload: bytes | None = None
        self.send: CipherState | None = None
        self.recv: CipherState | None = None

    async def run(self) -> None:
        symmetric = SymmetricState(NOISE_MODE)
        symmetric.mix_hash(CONN_HEADER)

        hello = parse_message(HandshakeMessage, await self.framer.read_frame())
        client_ephemeral = hello.client_hello.ephemeral
        symmetric.mix_hash(client_ephemeral)

        ephemeral = KeyPair.generate()
        symmetric.mix_hash(ephemeral.public)
        symmetric.mix_key(ephemeral.dh(client_ephemeral))
        static_ct = symmetric.encrypt_and_hash(self.static_key.public)
        symmetric.mix_key(self.static_key.dh(client_ephemeral))
        payload_ct = symmetric.encrypt_and_hash(self.cert_payload)

        sent_ephemeral = ephemeral.public
        if self.tamper_ephemeral:
            sent_ephemeral = bytes([sent_ephemeral[0] ^ 0x01]) + sent_ephemeral[1:]
        response = HandshakeMessage()
        response.server_hello.ephemeral = sent_ephemeral
        response.server_hello.static = static_ct
        response.server_hello.payload = payload_ct
        await self.framer.write_frame(serialize_message(response))

        finish = parse_message(HandshakeMessage, await self.framer.read_frame())
        self.client_static = symmetric.decrypt_and_hash(finish.client_finish.static)
        symmetric.mix_key(ephemeral.dh(self.client_static))
        self.client_payload = symmetric.decrypt_and_hash(finish.client_finish.payload)
        self.recv, self.send = symmetric.split()

    async def send_node(self, item: Node) -> None:
        assert self.send is not None
        await self.framer.write_frame(self.send.encrypt_with_ad(b"", pack(item)))

    async def send_raw(self, ciphertext: bytes) -> None:
        await self.framer.write_frame(ciphertext)

    def seal(self, item: Node) -> bytes:
        assert self.send is not None
        return self.send.encrypt_with_ad(b"", pack(item))

    async def receive_node(self) -> Node:
        assert self.recv is not None
        return unpack(self.recv.decrypt_with_ad(b"", await self.framer.read_frame()))


# -------------------------------------------------------------------------
# Pairing payloads
# -------------------------------------------------------------------------


def make_device_identity_container(
    adv_secret: bytes,
    identity_public: bytes,
    account_key: SigningKeyPair,
    ref: str,
    server_static_public: bytes,
    *,
    key_index: int = 1,
) -> bytes:
    """Account-signed, HMAC-wrapped device identity as sent in pair-success."""
    details = serialize_message(
        DeviceIdentityDetails(raw_id=42, timestamp=int(time.time()), key_index=key_index)
    )
    signed = SignedDeviceIdentity(
        details=details,
        account_signature_key=account_key.public,
        account_signature=account_key.sign(
            b"\x06\x00"
            + details
            + ref.encode()
            + server_static_public
            + identity_public
        ),
    )
    signed_bytes = serialize_message(signed)
    wrapper = DeviceIdentityHmac(
        details=signed_bytes,
        hmac=hmac.new(adv_secret, signed_bytes, hashlib.sha256).digest(),
    )
    return serialize_message(wrapper)


def make_pair_success(
    container: bytes,
    ref: str,
    *,
    jid: str = "15551234567:3@s.whatsapp.net",
    iq_id: str = "pair-1",
) -> Node:
    return node(
        "iq",
        {"from": "s.whatsapp.net", "id": iq_id, "type": "set", "xmlns": "md"},
        [
            node(
                "pair-success",
                content=[
                    node("ref", content=ref.encode()),
                    node("device-identity", content=container),
                    node("device", {"jid": jid, "lid": "98765:3@lid"}),
                    node("platform", {"name": "android"}),
                ],
            )
        ],
    )


def make_pair_device(refs: list[str], *, iq_id: str = "push-1") -> Node:
    return node(
        "iq",
        {"from": "s.whatsapp.net", "id": iq_id, "type": "set", "xmlns": "md"},
        [node("pair-device", content=[node("ref", content=r.encode()) for r in refs])],
    )


# -------------------------------------------------------------------------
# Async helpers
# -------------------------------------------------------------------------


class EventRecorder:
    """Event handler that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[object] = []

    def on_event(self, event: object) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def root_key() -> SigningKeyPair:
    """Pinned certificate root."""
    return SigningKeyPair.generate()


@pytest.fixture
def server_static() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def cert_payload(root_key: SigningKeyPair, server_static: KeyPair) -> bytes:
    return make_cert_chain(root_key, server_static.public)


@pytest.fixture
def unpaired_identity() -> DeviceIdentity:
    return DeviceIdentity.generate()


@pytest.fixture
def account_key() -> SigningKeyPair:
    """Primary device's account signing key."""
    return SigningKeyPair.generate()
