"""Binary node encoder.

Always emits the shortest representation: dictionary tokens for known
strings, LIST_EMPTY for the empty string, and the narrowest list/length
token that fits.
"""

from __future__ import annotations

from collections.abc import Iterator

from ..errors import FormatError
from . import tokens
from .decoder import DEFAULT_MAX_DEPTH
from .node import Binary, Children, Node


def _write_list_size(out: bytearray, size: int) -> None:
    if size <= 0xFF:
        out.append(tokens.LIST_8)
        out.append(size)
    elif size <= 0xFFFF:
        out.append(tokens.LIST_16)
        out += size.to_bytes(2, "big")
    else:
        raise FormatError(f"list of {size} entries exceeds LIST_16")


def _write_raw(out: bytearray, raw: bytes) -> None:
    length = len(raw)
    if length <= 0xFF:
        out.append(tokens.BINARY_8)
        out.append(length)
    elif length <= tokens.MAX_BINARY_20:
        out.append(tokens.BINARY_20)
        out += length.to_bytes(3, "big")
    elif length <= 0xFFFF_FFFF:
        out.append(tokens.BINARY_32)
        out += length.to_bytes(4, "big")
    else:
        raise FormatError(f"value of {length} bytes exceeds BINARY_32")
    out += raw


def _write_string(out: bytearray, value: str) -> None:
    if not value:
        out.append(tokens.LIST_EMPTY)
        return
    index = tokens.TOKEN_INDEX.get(value)
    if index is not None:
        out.append(index)
        return
    _write_raw(out, value.encode("utf-8"))


def _write_head(out: bytearray, item: Node) -> None:
    has_content = isinstance(item.content, (Binary, Children))
    _write_list_size(out, 1 + 2 * len(item.attrs) + (1 if has_content else 0))
    _write_string(out, item.tag)
    for key, value in item.attrs.items():
        _write_string(out, key)
        _write_string(out, value)


def encode(item: Node, *, max_depth: int = DEFAULT_MAX_DEPTH) -> bytes:
    """Encode a node tree into its canonical wire form."""
    out = bytearray()
    pending: list[Iterator[Node]] = []
    current: Node | None = item

    while current is not None:
        if len(pending) >= max_depth:
            raise FormatError(f"node nesting exceeds depth {max_depth}")

        _write_head(out, current)
        content = current.content
        if isinstance(content, Binary):
            _write_raw(out, content.data)
        elif isinstance(content, Children):
            _write_list_size(out, len(content))
            if len(content):
                pending.append(iter(content))

        current = None
        while pending:
            current = next(pending[-1], None)
            if current is not None:
                break
            pending.pop()

    return bytes(out)
