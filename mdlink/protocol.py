"""Protocol node builders and id generation.

Builders are pure functions returning Node trees; nothing here touches the
network.
"""

from __future__ import annotations

import hashlib
import itertools
import secrets
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .binary import Node, node
from .errors import IQError
from .jid import DEFAULT_USER_SERVER, JID, LEGACY_USER_SERVER, SERVER_JID
from .keys import DJB_TYPE, PreKey, SignedPreKey
from .protobuf_util import ClientPayload, serialize_message

if TYPE_CHECKING:
    from .config import ClientConfig
    from .store import DeviceIdentity

NS_MD = "md"
NS_PING = "w:p"
NS_ENCRYPT = "encrypt"
NS_PASSIVE = "passive"

IQ_GET = "get"
IQ_SET = "set"
IQ_RESULT = "result"
IQ_ERROR = "error"

MESSAGE_ID_PREFIX = "3EB0"


class IdGenerator:
    """IQ id source: a random per-connection prefix and a counter."""

    def __init__(self) -> None:
        self._prefix = f"{secrets.randbelow(65536)}.{secrets.randbelow(65536)}"
        self._counter = itertools.count(1)

    def next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


def generate_message_id(own_user: str | None = None, now: float | None = None) -> str:
    """Message id: 3EB0 + first 9 bytes of a SHA-256 digest, uppercase hex."""
    digest = hashlib.sha256()
    digest.update(int(now if now is not None else time.time()).to_bytes(8, "big"))
    if own_user:
        digest.update(f"{own_user}@{LEGACY_USER_SERVER}".encode())
    digest.update(secrets.token_bytes(16))
    return MESSAGE_ID_PREFIX + digest.digest()[:9].hex().upper()


# -------------------------------------------------------------------------
# IQ envelopes
# -------------------------------------------------------------------------


def build_iq(
    iq_id: str,
    xmlns: str,
    iq_type: str,
    content: Iterable[Node] | bytes | None = None,
    *,
    to: JID = SERVER_JID,
) -> Node:
    return node(
        "iq",
        {"id": iq_id, "xmlns": xmlns, "type": iq_type, "to": str(to)},
        content,
    )


def build_iq_result(request: Node) -> Node:
    """Empty result acknowledging a server-initiated IQ."""
    attrs = {"type": IQ_RESULT, "to": request.attrs.get("from", DEFAULT_USER_SERVER)}
    if "id" in request.attrs:
        attrs["id"] = request.attrs["id"]
    return node("iq", attrs)


def parse_iq_error(response: Node) -> IQError:
    error = response.get_child("error")
    if error is None:
        return IQError(None)
    code = error.attrs.get("code")
    return IQError(
        int(code) if code and code.isdigit() else None,
        error.attrs.get("text", ""),
    )


def build_ping(iq_id: str) -> Node:
    return build_iq(iq_id, NS_PING, IQ_GET, [node("ping")])


def build_set_passive(iq_id: str, passive: bool) -> Node:
    return build_iq(iq_id, NS_PASSIVE, IQ_SET, [node("passive" if passive else "active")])


# -------------------------------------------------------------------------
# Pairing
# -------------------------------------------------------------------------


def build_pair_device_request(iq_id: str) -> Node:
    return build_iq(iq_id, NS_MD, IQ_GET, [node("pair-device")])


def parse_pair_device_refs(pair_device: Node) -> list[str]:
    """Reference codes inside a <pair-device> node, in server order."""
    refs: list[str] = []
    for ref in pair_device.get_children("ref"):
        if ref.data:
            refs.append(ref.data.decode("utf-8", errors="replace"))
    return refs


def build_pair_device_sign(iq_id: str, key_index: int, signed_identity: bytes) -> Node:
    return build_iq(
        iq_id,
        NS_MD,
        IQ_SET,
        [
            node(
                "pair-device-sign",
                content=[
                    node(
                        "device-identity",
                        {"key-index": str(key_index)},
                        signed_identity,
                    )
                ],
            )
        ],
    )


def build_logout(iq_id: str, jid: JID) -> Node:
    return build_iq(
        iq_id,
        NS_MD,
        IQ_SET,
        [
            node(
                "remove-companion-device",
                {"jid": str(jid), "reason": "user_initiated"},
            )
        ],
    )


# -------------------------------------------------------------------------
# Prekeys
# -------------------------------------------------------------------------


def _key_id_bytes(key_id: int) -> bytes:
    return key_id.to_bytes(3, "big")


def build_prekey_upload(
    iq_id: str,
    registration_id: int,
    identity_public: bytes,
    signed_prekey: SignedPreKey,
    prekeys: Iterable[PreKey],
) -> Node:
    key_nodes = [
        node(
            "key",
            content=[
                node("id", content=_key_id_bytes(prekey.key_id)),
                node("value", content=prekey.key_pair.public),
            ],
        )
        for prekey in prekeys
    ]
    return build_iq(
        iq_id,
        NS_ENCRYPT,
        IQ_SET,
        [
            node("registration", content=registration_id.to_bytes(4, "big")),
            node("type", content=DJB_TYPE),
            node("identity", content=identity_public),
            node("list", content=key_nodes),
            node(
                "skey",
                content=[
                    node("id", content=_key_id_bytes(signed_prekey.key_id)),
                    node("value", content=signed_prekey.key_pair.public),
                    node("signature", content=signed_prekey.signature),
                ],
            ),
        ],
    )


def parse_prekey_count(response: Node) -> int | None:
    count = response.get_child("count")
    if count is None:
        return None
    value = count.attrs.get("value", "")
    return int(value) if value.isdigit() else None


def build_rotate_signed_prekey(iq_id: str, signed_prekey: SignedPreKey) -> Node:
    return build_iq(
        iq_id,
        NS_ENCRYPT,
        IQ_SET,
        [
            node(
                "rotate",
                content=[
                    node(
                        "skey",
                        content=[
                            node("id", content=_key_id_bytes(signed_prekey.key_id)),
                            node("value", content=signed_prekey.key_pair.public),
                            node("signature", content=signed_prekey.signature),
                        ],
                    )
                ],
            )
        ],
    )


# -------------------------------------------------------------------------
# Handshake client payload
# -------------------------------------------------------------------------


def build_client_payload(identity: DeviceIdentity, config: ClientConfig) -> bytes:
    """Serialized ClientPayload: login when paired, registration otherwise."""
    payload = ClientPayload()
    agent = config.user_agent
    payload.user_agent.platform = agent.platform
    payload.user_agent.app_version = agent.app_version
    payload.user_agent.os_version = agent.os_version
    payload.user_agent.manufacturer = agent.manufacturer
    payload.user_agent.device = agent.device
    payload.user_agent.locale_language = agent.locale_language
    payload.user_agent.locale_country = agent.locale_country
    if config.push_name:
        payload.push_name = config.push_name

    if identity.jid is not None:
        payload.username = identity.jid.user_int()
        payload.device = identity.jid.device
        payload.passive = True
        payload.pull = True
    else:
        signed_prekey = identity.signed_prekey
        registration = payload.device_pairing_data
        registration.e_regid = identity.registration_id.to_bytes(4, "big")
        registration.e_keytype = DJB_TYPE
        registration.e_ident = identity.identity_key.public
        registration.e_skey_id = _key_id_bytes(signed_prekey.key_id)
        registration.e_skey_val = signed_prekey.key_pair.public
        registration.e_skey_sig = signed_prekey.signature
        registration.build_hash = hashlib.md5(
            agent.app_version.encode("utf-8"), usedforsecurity=False
        ).digest()
        payload.passive = False
        payload.pull = False
    return serialize_message(payload)
