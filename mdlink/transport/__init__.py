"""Socket, framing and handshake layers."""

from .framing import CONN_HEADER, MAX_FRAME_SIZE, ByteStream, FrameTransport
from .noise import (
    CipherState,
    HandshakeState,
    NoiseHandshake,
    SymmetricState,
    TransportKeys,
    verify_cert_chain,
)
from .ws import connect_websocket
from .ws_client import WsClient, WsMessage, WsMessageType

__all__ = [
    "CONN_HEADER",
    "MAX_FRAME_SIZE",
    "ByteStream",
    "CipherState",
    "FrameTransport",
    "HandshakeState",
    "NoiseHandshake",
    "SymmetricState",
    "TransportKeys",
    "WsClient",
    "WsMessage",
    "WsMessageType",
    "connect_websocket",
    "verify_cert_chain",
]
