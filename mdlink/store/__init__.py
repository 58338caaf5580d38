"""Identity and session storage."""

from ..keys import PreKey, SignedPreKey
from .base import DeviceIdentity, Session, SessionCipher, Store
from .memory import MemoryStore

__all__ = [
    "DeviceIdentity",
    "MemoryStore",
    "PreKey",
    "Session",
    "SessionCipher",
    "SignedPreKey",
    "Store",
]
