"""Events emitted by the connection manager and the handler interface."""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Protocol, TypeAlias

from .binary import Node
from .jid import JID
from .store import DeviceIdentity


class ConnectFailureReason(IntEnum):
    """Reason codes carried by a <failure> node at login."""

    GENERIC = 400
    LOGGED_OUT = 401
    TEMP_BANNED = 402
    MAIN_DEVICE_GONE = 403
    UNKNOWN_LOGOUT = 405
    CLIENT_OUTDATED = 406
    BAD_USER_AGENT = 409
    CAT_EXPIRED = 413
    CAT_INVALID = 414
    NOT_FOUND = 415
    CLIENT_UNKNOWN = 418
    INTERNAL_SERVER_ERROR = 500
    EXPERIMENTAL = 501
    SERVICE_UNAVAILABLE = 503

    @property
    def is_logged_out(self) -> bool:
        """The stored identity is no longer valid and must not be reused."""
        return self in (
            ConnectFailureReason.LOGGED_OUT,
            ConnectFailureReason.MAIN_DEVICE_GONE,
            ConnectFailureReason.CLIENT_OUTDATED,
        )

    @classmethod
    def from_code(cls, code: int) -> ConnectFailureReason:
        try:
            return cls(code)
        except ValueError:
            return cls.GENERIC


@dataclass(frozen=True, slots=True)
class Qr:
    """Pairing codes to render; the first one is current."""

    codes: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class PairSuccess:
    identity: DeviceIdentity
    jid: JID
    business_name: str = ""
    platform: str = ""


@dataclass(frozen=True, slots=True)
class PairError:
    jid: JID | None
    error: Exception


@dataclass(frozen=True, slots=True)
class Connected:
    """Login completed; the connection is online."""


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: str


@dataclass(frozen=True, slots=True)
class LoggedOut:
    on_connect: bool
    reason: ConnectFailureReason


@dataclass(frozen=True, slots=True)
class StreamReplaced:
    """Another client logged in with the same identity."""


@dataclass(frozen=True, slots=True)
class StreamError:
    code: str
    raw: Node | None = None


@dataclass(frozen=True, slots=True)
class KeepAliveTimeout:
    error_count: int
    last_success: datetime | None


@dataclass(frozen=True, slots=True)
class KeepAliveRestored:
    pass


@dataclass(frozen=True, slots=True)
class Message:
    node: Node


@dataclass(frozen=True, slots=True)
class Receipt:
    node: Node


Event: TypeAlias = (
    Qr
    | PairSuccess
    | PairError
    | Connected
    | Disconnected
    | LoggedOut
    | StreamReplaced
    | StreamError
    | KeepAliveTimeout
    | KeepAliveRestored
    | Message
    | Receipt
)


class EventHandler(Protocol):
    """Receives every event of the manager it is registered with.

    on_event may return an awaitable, which the manager awaits before
    delivering the next event.
    """

    def on_event(self, event: Event) -> Awaitable[None] | None: ...
