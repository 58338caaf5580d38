"""Binary node codec.

Nodes travel as a compact token-compressed tree. Inside an encrypted frame
the encoded node is preceded by one flags byte; flag 0x02 marks a
zlib-compressed node.
"""

from __future__ import annotations

import zlib
from typing import Final

from ..errors import FormatError, SizeLimitExceeded, UnexpectedEof
from .decoder import DEFAULT_MAX_DEPTH, DEFAULT_MAX_SIZE, Decoder, decode
from .encoder import encode
from .node import EMPTY, Binary, Children, Empty, Node, NodeContent, node
from .tokens import DICT_VERSION

FLAG_COMPRESSED: Final = 0x02


def pack(item: Node, *, max_depth: int = DEFAULT_MAX_DEPTH) -> bytes:
    """Encode a node as a frame payload (flags byte + encoded node)."""
    return b"\x00" + encode(item, max_depth=max_depth)


def unpack(
    payload: bytes,
    *,
    max_size: int = DEFAULT_MAX_SIZE,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Node:
    """Decode a frame payload produced by pack() or by a compressing peer."""
    if not payload:
        raise UnexpectedEof("frame payload is empty")
    flags, body = payload[0], payload[1:]
    if flags & FLAG_COMPRESSED:
        inflater = zlib.decompressobj()
        try:
            body = inflater.decompress(body, max_size + 1)
        except zlib.error as err:
            raise FormatError("compressed node payload is corrupt") from err
        if len(body) > max_size:
            raise SizeLimitExceeded(len(body), max_size)
        if not inflater.eof:
            raise UnexpectedEof("compressed node payload is truncated")
    return decode(body, max_size=max_size, max_depth=max_depth)


__all__ = [
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_MAX_SIZE",
    "DICT_VERSION",
    "EMPTY",
    "FLAG_COMPRESSED",
    "Binary",
    "Children",
    "Decoder",
    "Empty",
    "Node",
    "NodeContent",
    "decode",
    "encode",
    "node",
    "pack",
    "unpack",
]
