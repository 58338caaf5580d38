"""Error types for the mdlink protocol engine.

Every failure the engine surfaces derives from MdLinkError. The second level
mirrors how the connection manager reacts to a failure:

- FormatError: malformed binary input, always a typed decode failure
- CryptoError: handshake/AEAD failure, fatal to the current connection
- ProtocolError: unexpected node or state transition, connection reset
- TransportError: I/O failure, handled by the reconnect supervisor
- MdLinkTimeout: request or pairing timeout, recoverable by the caller
"""

from __future__ import annotations


class MdLinkError(Exception):
    """Base error for mdlink failures."""


# -------------------------------------------------------------------------
# Format
# -------------------------------------------------------------------------


class FormatError(MdLinkError):
    """Malformed binary input."""


class UnexpectedEof(FormatError):
    """Input ended before a complete value could be read."""


class UnknownToken(FormatError):
    """A token byte that has no meaning in its position."""

    def __init__(self, token: int, message: str | None = None) -> None:
        super().__init__(message or f"unknown token 0x{token:02x}")
        self.token = token


class SizeLimitExceeded(FormatError):
    """A declared length exceeds the configured ceiling."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"declared size {size} exceeds limit {limit}")
        self.size = size
        self.limit = limit


# -------------------------------------------------------------------------
# Crypto
# -------------------------------------------------------------------------


class CryptoError(MdLinkError):
    """Handshake or AEAD failure."""


class CertificateError(CryptoError):
    """Server certificate chain failed verification against the pinned root."""


# -------------------------------------------------------------------------
# Protocol
# -------------------------------------------------------------------------


class ProtocolError(MdLinkError):
    """Unexpected node or state transition."""


class DesyncError(ProtocolError):
    """Inbound frame did not authenticate under the expected receive nonce."""


class IQError(ProtocolError):
    """Server answered an IQ request with type="error"."""

    def __init__(self, code: int | None, text: str = "") -> None:
        super().__init__(f"iq error {code}: {text}" if text else f"iq error {code}")
        self.code = code
        self.text = text


# -------------------------------------------------------------------------
# Transport
# -------------------------------------------------------------------------


class TransportError(MdLinkError):
    """Network connection to the service failed."""


class NotConnectedError(TransportError):
    """Operation requires a live connection."""


class HandshakeTransportError(TransportError):
    """WebSocket upgrade to the edge endpoint failed."""


# -------------------------------------------------------------------------
# Timeouts and cancellation
# -------------------------------------------------------------------------


class MdLinkTimeout(MdLinkError):
    """Timeout while communicating with the service."""


class RequestTimeout(MdLinkTimeout):
    """No response arrived for a request before its deadline."""


class PairingTimeout(MdLinkTimeout):
    """Pairing codes were rotated the maximum number of times without a scan."""


class RequestCancelled(MdLinkError):
    """Pending request was abandoned because the connection was closed."""


# -------------------------------------------------------------------------
# Pairing and storage
# -------------------------------------------------------------------------


class PairingError(MdLinkError):
    """Pairing attempt failed."""


class PairingSignatureError(PairingError):
    """Device identity HMAC or account signature did not verify."""


class StoreError(MdLinkError):
    """Identity/session store operation failed."""


class ConfigError(MdLinkError):
    """Client configuration could not be loaded or is invalid."""
