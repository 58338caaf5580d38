"""In-memory Store backend."""

from __future__ import annotations

from ..keys import PreKey
from .base import DeviceIdentity, Session, Store


class MemoryStore(Store):
    """Store that keeps everything in process memory.

    Each instance is independent, so several clients can share a process.
    """

    def __init__(self, identity: DeviceIdentity | None = None) -> None:
        super().__init__()
        self._identity = identity
        self._sessions: dict[str, Session] = {}
        self._prekeys: dict[int, PreKey] = {}

    async def get_identity(self) -> DeviceIdentity | None:
        return self._identity

    async def put_identity(self, identity: DeviceIdentity) -> None:
        self._identity = identity

    async def delete_identity(self) -> None:
        self._identity = None
        self._sessions.clear()
        self._prekeys.clear()

    async def get_session(self, peer: str) -> Session | None:
        return self._sessions.get(peer)

    async def put_session(self, peer: str, session: Session) -> None:
        self._sessions[peer] = session

    async def list_prekeys(self) -> list[PreKey]:
        return [self._prekeys[key_id] for key_id in sorted(self._prekeys)]

    async def put_prekeys(self, prekeys: list[PreKey]) -> None:
        for prekey in prekeys:
            self._prekeys[prekey.key_id] = prekey

    async def remove_prekey(self, key_id: int) -> None:
        self._prekeys.pop(key_id, None)
