"""WebSocket helpers for the edge endpoint."""

from __future__ import annotations

import asyncio

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)
from websockets.typing import Origin

from ..errors import HandshakeTransportError, MdLinkTimeout, TransportError


async def connect_websocket(
    url: str,
    *,
    origin: str | None = None,
    ping_interval: float | None = None,
    timeout: float = 20.0,
) -> ClientConnection:
    """Open a WebSocket-over-TLS connection to the edge endpoint.

    Frame sizes are bounded by the binary framing above this layer, so the
    library limit is disabled.
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                origin=Origin(origin) if origin else None,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise MdLinkTimeout("WebSocket connection timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise HandshakeTransportError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise TransportError("WebSocket connection failed") from err
