"""JID address type: user[.agent][:device]@server."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
LEGACY_USER_SERVER = "c.us"
BROADCAST_SERVER = "broadcast"
HIDDEN_USER_SERVER = "lid"


@dataclass(frozen=True, slots=True)
class JID:
    """Address of a user, device, group or server."""

    user: str
    server: str
    agent: int = 0
    device: int = 0

    @classmethod
    def parse(cls, value: str) -> JID:
        """Parse a JID string.

        Raises:
            ValueError: value is empty or has a non-numeric agent/device part.
        """
        if not value:
            raise ValueError("JID must not be empty")
        if "@" not in value:
            return cls(user="", server=value)

        user_part, server = value.split("@", 1)
        if not server:
            raise ValueError(f"JID {value!r} has no server")

        agent = device = 0
        user = user_part
        if ":" in user:
            user, device_part = user.split(":", 1)
            if not device_part.isdigit():
                raise ValueError(f"JID {value!r} has an invalid device")
            device = int(device_part)
        if "." in user:
            user, agent_part = user.split(".", 1)
            if not agent_part.isdigit():
                raise ValueError(f"JID {value!r} has an invalid agent")
            agent = int(agent_part)
        return cls(user=user, server=server, agent=agent, device=device)

    @property
    def is_ad(self) -> bool:
        """True when the JID addresses one device of an account."""
        return self.agent != 0 or self.device != 0

    def to_non_ad(self) -> JID:
        return JID(user=self.user, server=self.server)

    def user_int(self) -> int:
        """Numeric user part, as carried in the login payload."""
        return int(self.user)

    def __str__(self) -> str:
        if not self.user:
            return self.server
        user = self.user
        if self.agent:
            user = f"{user}.{self.agent}"
        if self.device:
            user = f"{user}:{self.device}"
        return f"{user}@{self.server}"


SERVER_JID = JID(user="", server=DEFAULT_USER_SERVER)
