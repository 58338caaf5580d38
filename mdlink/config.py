"""Client configuration.

ClientConfig carries every tunable of a connection with usable defaults.
Hosts that keep settings in a file can use load_config(); anything beyond
that (search paths, environment, CLI flags) belongs to the host.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .binary import DEFAULT_MAX_DEPTH, DEFAULT_MAX_SIZE
from .errors import ConfigError

DEFAULT_WS_URL = "wss://web.whatsapp.com/ws"
DEFAULT_ORIGIN = "https://web.whatsapp.com"


@dataclass(slots=True)
class UserAgentConfig:
    """Client identification sent in the login payload."""

    platform: str = "WEB"
    app_version: str = "2.3000.1"
    os_version: str = "0.1"
    manufacturer: str = ""
    device: str = "Desktop"
    locale_language: str = "en"
    locale_country: str = "US"


@dataclass(slots=True)
class ClientConfig:
    """Connection settings.

    Attributes:
        url: Edge WebSocket endpoint.
        origin: Origin header sent with the WebSocket upgrade.
        root_public_key: Pinned Ed25519 key that signs the server
            certificate chain. Required to connect.
        connect_timeout: Seconds allowed for the WebSocket upgrade.
        handshake_timeout: Seconds allowed for the whole noise handshake.
        request_timeout: Default deadline for IQ requests.
        keepalive_interval: Seconds between pings while online.
        keepalive_timeout: Deadline for one ping response.
        keepalive_max_failures: Consecutive failed pings that force a reconnect.
        reconnect_base_delay: First reconnect delay.
        reconnect_max_delay: Ceiling for reconnect delays.
        reconnect_jitter: Fraction of the delay added at random.
        reconnect_max_attempts: Attempts before giving up; None retries forever.
        backoff_reset_after: Online seconds after which the backoff resets.
        qr_code_ttl: Seconds each pairing code stays on display.
        qr_max_rotations: Code rotations before pairing times out.
        max_node_size: Ceiling for any declared length in an inbound node.
        max_node_depth: Ceiling for inbound node nesting.
        prekey_upload_count: Prekeys generated per upload.
        prekey_low_watermark: Server-reported count that triggers an upload.
        push_name: Display name sent at login.
    """

    url: str = DEFAULT_WS_URL
    origin: str = DEFAULT_ORIGIN
    root_public_key: bytes | None = None
    connect_timeout: float = 20.0
    handshake_timeout: float = 20.0
    request_timeout: float = 75.0
    keepalive_interval: float = 25.0
    keepalive_timeout: float = 20.0
    keepalive_max_failures: int = 3
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_jitter: float = 0.2
    reconnect_max_attempts: int | None = 10
    backoff_reset_after: float = 60.0
    qr_code_ttl: float = 20.0
    qr_max_rotations: int = 5
    max_node_size: int = DEFAULT_MAX_SIZE
    max_node_depth: int = DEFAULT_MAX_DEPTH
    prekey_upload_count: int = 30
    prekey_low_watermark: int = 5
    push_name: str = ""
    user_agent: UserAgentConfig = field(default_factory=UserAgentConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ClientConfig:
        """Build a config from plain data, e.g. a parsed YAML document.

        root_public_key may be given as a hex string; user_agent as a
        nested mapping.

        Raises:
            ConfigError: data contains unknown keys or malformed values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        values = dict(data)
        root_key = values.get("root_public_key")
        if isinstance(root_key, str):
            try:
                values["root_public_key"] = bytes.fromhex(root_key)
            except ValueError as err:
                raise ConfigError("root_public_key is not valid hex") from err

        agent = values.get("user_agent")
        if isinstance(agent, Mapping):
            try:
                values["user_agent"] = UserAgentConfig(**agent)
            except TypeError as err:
                raise ConfigError(f"Invalid user_agent: {err}") from err

        return cls(**values)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigError(f"Invalid YAML in {path}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def load_config(path: Path | str) -> ClientConfig:
    """Load a ClientConfig from a YAML file."""
    return ClientConfig.from_mapping(_load_yaml(Path(path)))
