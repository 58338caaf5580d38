"""Token constants and the single-byte string dictionary.

Strings listed in SINGLE_BYTE_TOKENS are written as their one-byte index;
everything else falls back to a length-prefixed raw string. The table is
versioned by DICT_VERSION, which is announced in the connection header, so
both ends must agree on it byte for byte. Append new entries at the end and
bump DICT_VERSION when reordering.
"""

from __future__ import annotations

from typing import Final

DICT_VERSION: Final = 3

LIST_EMPTY: Final = 0x00
LIST_8: Final = 0xF8
LIST_16: Final = 0xF9
BINARY_8: Final = 0xFC
BINARY_20: Final = 0xFD
BINARY_32: Final = 0xFE

MAX_BINARY_20: Final = 0x0F_FFFF

# Index 0 is LIST_EMPTY and never used as a dictionary slot.
SINGLE_BYTE_TOKENS: Final[tuple[str, ...]] = (
    "",
    "xmlstreamstart",
    "xmlstreamend",
    "s.whatsapp.net",
    "type",
    "participant",
    "from",
    "receipt",
    "id",
    "notification",
    "status",
    "jid",
    "broadcast",
    "user",
    "devices",
    "to",
    "offline",
    "message",
    "result",
    "class",
    "xmlns",
    "duration",
    "notify",
    "iq",
    "t",
    "ack",
    "g.us",
    "enc",
    "presence",
    "picture",
    "contact",
    "mediatype",
    "get",
    "read",
    "urn:xmpp:ping",
    "0",
    "chatstate",
    "unavailable",
    "skmsg",
    "composing",
    "handshake",
    "device-list",
    "media",
    "text",
    "device",
    "creation",
    "location",
    "config",
    "item",
    "count",
    "image",
    "business",
    "2",
    "hostname",
    "display_name",
    "platform",
    "success",
    "msg",
    "prop",
    "v",
    "pkmsg",
    "version",
    "1",
    "ping",
    "w:p",
    "download",
    "video",
    "set",
    "props",
    "primary",
    "unknown",
    "hash",
    "last",
    "subscribe",
    "call",
    "profile",
    "sticker",
    "mode",
    "participants",
    "value",
    "query",
    "code",
    "list",
    "host",
    "ts",
    "contacts",
    "upload",
    "lid",
    "preview",
    "update",
    "usync",
    "delivery",
    "context",
    "fail",
    "category",
    "target",
    "available",
    "name",
    "401",
    "index",
    "recipient",
    "edit",
    "add",
    "paused",
    "true",
    "identity",
    "stream:error",
    "key",
    "audio",
    "3",
    "error",
    "auth",
    "deny",
    "serial",
    "in",
    "registration",
    "remove",
    "tag",
    "capability",
    "item-not-found",
    "description",
    "expiration",
    "fallback",
    "ttl",
    "300",
    "out",
    "w:m",
    "token",
    "inactive",
    "document",
    "played",
    "encrypt",
    "hide",
    "state",
    "not-authorized",
    "url",
    "terminate",
    "signature",
    "timezone",
    "ptt",
    "privacy",
    "android",
    "device-identity",
    "enabled",
    "md",
    "pair-device",
    "pair-success",
    "pair-device-sign",
    "ref",
    "biz",
    "key-index",
    "failure",
    "reason",
    "conflict",
    "replaced",
    "200",
    "400",
    "403",
    "406",
    "500",
    "515",
    "skey",
    "remove-companion-device",
    "user_initiated",
    "false",
    "w:stats",
    "keep-alive",
)

if len(SINGLE_BYTE_TOKENS) >= LIST_8:
    raise RuntimeError("Single-byte dictionary overlaps reserved token range")

TOKEN_INDEX: Final[dict[str, int]] = {
    token: index for index, token in enumerate(SINGLE_BYTE_TOKENS) if index
}


def lookup_token(index: int) -> str | None:
    """Return the dictionary string for a token byte, or None if unassigned."""
    if 0 < index < len(SINGLE_BYTE_TOKENS):
        return SINGLE_BYTE_TOKENS[index]
    return None
