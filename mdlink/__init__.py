"""Client-side protocol engine for a multidevice messaging service."""

from .binary import Binary, Children, Empty, Node, node
from .config import ClientConfig, UserAgentConfig, load_config
from .connection import Backoff, ConnectionManager, ConnectionState
from .errors import (
    CertificateError,
    ConfigError,
    CryptoError,
    DesyncError,
    FormatError,
    IQError,
    MdLinkError,
    MdLinkTimeout,
    NotConnectedError,
    PairingError,
    PairingSignatureError,
    PairingTimeout,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    SizeLimitExceeded,
    StoreError,
    TransportError,
    UnexpectedEof,
    UnknownToken,
)
from .events import ConnectFailureReason, Event, EventHandler
from .jid import JID
from .pairing import PairingState, PairingStateMachine
from .store import DeviceIdentity, MemoryStore, Session, SessionCipher, Store

__version__ = "0.1.0"

__all__ = [
    "JID",
    "Backoff",
    "Binary",
    "CertificateError",
    "Children",
    "ClientConfig",
    "ConfigError",
    "ConnectFailureReason",
    "ConnectionManager",
    "ConnectionState",
    "CryptoError",
    "DesyncError",
    "DeviceIdentity",
    "Empty",
    "Event",
    "EventHandler",
    "FormatError",
    "IQError",
    "MdLinkError",
    "MdLinkTimeout",
    "MemoryStore",
    "Node",
    "NotConnectedError",
    "PairingError",
    "PairingSignatureError",
    "PairingState",
    "PairingStateMachine",
    "PairingTimeout",
    "ProtocolError",
    "RequestCancelled",
    "RequestTimeout",
    "Session",
    "SessionCipher",
    "SizeLimitExceeded",
    "Store",
    "StoreError",
    "TransportError",
    "UnexpectedEof",
    "UnknownToken",
    "UserAgentConfig",
    "load_config",
    "node",
    "__version__",
]
