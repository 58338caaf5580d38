"""WebSocket client wrapper exposing the connection as a byte stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import NotConnectedError, TransportError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)


class WsMessageType(Enum):
    """Normalized WebSocket message types."""

    BINARY = "binary"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class WsMessage:
    """Normalized WebSocket message payload."""

    type: WsMessageType
    data: bytes | None = None


class WsClient:
    """Wrapper around the websockets library.

    Only binary messages carry protocol data; text messages are dropped.
    """

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None
        self._messages: AsyncIterator[WsMessage] | None = None

    async def connect(
        self,
        url: str,
        *,
        origin: str | None = None,
        timeout: float = 20.0,
    ) -> None:
        """Connect to the edge websocket."""
        self._ws = await connect_websocket(url, origin=origin, timeout=timeout)
        self._messages = self._iter_messages()

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_bytes(self, data: bytes) -> None:
        """Send binary data to the websocket.

        Raises:
            NotConnectedError: If not connected
            TransportError: If the connection dropped while sending
        """
        if self._ws is None:
            raise NotConnectedError("WebSocket is not connected")
        try:
            await self._ws.send(data)
        except (ConnectionClosed, OSError) as err:
            raise TransportError("WebSocket send failed") from err

    async def receive_bytes(self) -> bytes:
        """Wait for the next binary message.

        Raises:
            TransportError: The connection closed or failed.
        """
        if self._messages is None:
            raise NotConnectedError("WebSocket is not connected")
        message = await anext(self._messages, WsMessage(WsMessageType.CLOSED))
        if message.type is WsMessageType.BINARY and message.data is not None:
            return message.data
        if message.type is WsMessageType.ERROR:
            raise TransportError("WebSocket error")
        raise TransportError("WebSocket closed")

    async def _iter_messages(self) -> AsyncIterator[WsMessage]:
        if self._ws is None:
            raise NotConnectedError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield WsMessage(type=WsMessageType.CLOSED)
        except (OSError, WebSocketException):
            yield WsMessage(type=WsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield WsMessage(type=WsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> WsMessage | None:
        if isinstance(msg, (bytes, bytearray, memoryview)):
            return WsMessage(WsMessageType.BINARY, bytes(msg))
        _LOGGER.debug("Dropping non-binary WebSocket message")
        return None
