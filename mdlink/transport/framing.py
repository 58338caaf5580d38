"""Length-prefixed framing and transport encryption.

Every frame on the socket is a 3-byte big-endian length followed by that
many payload bytes. The connection header is written once, in front of the
first frame. Before the handshake completes frames are raw and carry only
handshake messages; afterwards every frame is an AES-GCM ciphertext of one
packed node, sealed under the next nonce of its direction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Final, Protocol

from ..binary import DEFAULT_MAX_DEPTH, DEFAULT_MAX_SIZE, DICT_VERSION, Node, pack, unpack
from ..errors import (
    CryptoError,
    DesyncError,
    NotConnectedError,
    ProtocolError,
    SizeLimitExceeded,
    TransportError,
)

if TYPE_CHECKING:
    from .noise import TransportKeys

_LOGGER = logging.getLogger(__name__)

CONN_HEADER: Final = b"WA" + bytes((6, DICT_VERSION))
FRAME_PREFIX_LENGTH: Final = 3
MAX_FRAME_SIZE: Final = (1 << 24) - 1


class ByteStream(Protocol):
    """Duplex byte stream under the framing layer (e.g. a WsClient)."""

    async def send_bytes(self, data: bytes) -> None: ...

    async def receive_bytes(self) -> bytes: ...

    async def close(self) -> None: ...


def encode_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_SIZE:
        raise SizeLimitExceeded(len(payload), MAX_FRAME_SIZE)
    return len(payload).to_bytes(FRAME_PREFIX_LENGTH, "big") + payload


class FrameTransport:
    """Frames, encrypts and decodes traffic on one byte stream.

    A single writer lock covers nonce allocation, encryption and the write,
    so concurrent senders can neither interleave frames nor reorder nonces.
    Reads are expected from one task only.
    """

    def __init__(
        self,
        stream: ByteStream,
        *,
        header: bytes = CONN_HEADER,
        max_node_size: int = DEFAULT_MAX_SIZE,
        max_node_depth: int = DEFAULT_MAX_DEPTH,
        label: str = "unpaired",
    ) -> None:
        self._stream = stream
        self._header = header
        self._header_sent = not header
        self._max_node_size = max_node_size
        self._max_node_depth = max_node_depth
        self._label = label

        self._send_lock = asyncio.Lock()
        self._buffer = bytearray()
        self._keys: TransportKeys | None = None
        self._closed = False

    @property
    def is_established(self) -> bool:
        return self._keys is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_static(self) -> bytes | None:
        """Server static key authenticated by the handshake."""
        return self._keys.remote_static if self._keys is not None else None

    def establish(self, keys: TransportKeys) -> None:
        """Switch to encrypted node traffic with the handshake's keys."""
        if self._keys is not None:
            raise ProtocolError("transport is already established")
        if self._closed:
            raise NotConnectedError("transport is closed")
        self._keys = keys
        _LOGGER.debug("[%s] Transport established", self._label)

    # -------------------------------------------------------------------------
    # Raw frames (handshake only)
    # -------------------------------------------------------------------------

    async def send_frame(self, payload: bytes) -> None:
        """Send one unencrypted handshake frame."""
        if self._keys is not None:
            raise ProtocolError("raw frames are not allowed after the handshake")
        async with self._send_lock:
            await self._write(payload)

    async def receive_frame(self) -> bytes:
        """Receive one unencrypted handshake frame."""
        if self._keys is not None:
            raise ProtocolError("raw frames are not allowed after the handshake")
        return await self._read_frame()

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def send_node(self, item: Node) -> None:
        """Encode, encrypt and send one node."""
        if self._closed:
            raise NotConnectedError("transport is closed")
        if self._keys is None:
            raise ProtocolError("nodes cannot be sent before the handshake completes")
        payload = pack(item)
        async with self._send_lock:
            if self._closed:
                raise NotConnectedError("transport is closed")
            await self._write(self._keys.send.encrypt_with_ad(b"", payload))
        _LOGGER.debug("[%s] Sent %r", self._label, item)

    async def receive_node(self) -> Node:
        """Receive, decrypt and decode the next node.

        A frame that fails to authenticate under the expected nonce closes
        the transport. A frame that authenticates but does not decode raises
        FormatError and leaves the transport usable.

        Raises:
            DesyncError: authentication failed; the transport is closed.
            FormatError: the decrypted payload is not a valid node.
            TransportError: the stream closed.
        """
        if self._keys is None:
            raise ProtocolError("nodes cannot be received before the handshake completes")
        ciphertext = await self._read_frame()
        keys = self._keys
        if keys is None:
            raise NotConnectedError("transport closed while receiving")
        try:
            plaintext = keys.recv.decrypt_with_ad(b"", ciphertext)
        except CryptoError as err:
            _LOGGER.error(
                "[%s] Inbound frame failed authentication at nonce %d",
                self._label,
                keys.recv.nonce,
            )
            await self.close()
            raise DesyncError("inbound frame did not authenticate") from err
        item = unpack(
            plaintext,
            max_size=self._max_node_size,
            max_depth=self._max_node_depth,
        )
        _LOGGER.debug("[%s] Received %r", self._label, item)
        return item

    async def close(self) -> None:
        """Close the stream and destroy the transport keys."""
        if self._closed:
            return
        self._closed = True
        if self._keys is not None:
            self._keys.destroy()
            self._keys = None
        self._buffer.clear()
        try:
            await self._stream.close()
        except TransportError as err:
            _LOGGER.debug("[%s] Stream close failed: %s", self._label, err)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _write(self, payload: bytes) -> None:
        data = encode_frame(payload)
        if not self._header_sent:
            data = self._header + data
            self._header_sent = True
        await self._stream.send_bytes(data)

    async def _read_frame(self) -> bytes:
        prefix = await self._read_exactly(FRAME_PREFIX_LENGTH)
        return await self._read_exactly(int.from_bytes(prefix, "big"))

    async def _read_exactly(self, length: int) -> bytes:
        while len(self._buffer) < length:
            if self._closed:
                raise NotConnectedError("transport is closed")
            self._buffer += await self._stream.receive_bytes()
        chunk = bytes(self._buffer[:length])
        del self._buffer[:length]
        return chunk
