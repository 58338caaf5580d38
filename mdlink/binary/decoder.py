"""Binary node decoder.

The decoder only accepts the canonical encoding produced by the encoder, so
any input it returns a Node for re-encodes to the identical bytes. Errors are
raised before a Node is built; a partially decoded tree is never returned.

Nesting is tracked with an explicit stack rather than recursion, so the
depth limit is enforced independently of the interpreter's recursion limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from ..errors import FormatError, SizeLimitExceeded, UnexpectedEof, UnknownToken
from . import tokens
from .node import EMPTY, Binary, Children, Node

DEFAULT_MAX_SIZE: Final = 1 << 20
DEFAULT_MAX_DEPTH: Final = 1024

_BINARY_TOKENS: Final = frozenset((tokens.BINARY_8, tokens.BINARY_20, tokens.BINARY_32))
_LIST_TOKENS: Final = frozenset((tokens.LIST_8, tokens.LIST_16))


@dataclass(slots=True)
class _OpenNode:
    """A node whose children are still being read."""

    tag: str
    attrs: dict[str, str]
    remaining: int
    children: list[Node]


class Decoder:
    """Cursor over one encoded node."""

    def __init__(
        self,
        data: bytes,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self._data = memoryview(bytes(data))
        self._pos = 0
        self._max_size = max_size
        self._max_depth = max_depth

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def _take(self, length: int) -> memoryview:
        if length > self.remaining:
            raise UnexpectedEof(
                f"need {length} bytes at offset {self._pos}, {self.remaining} left"
            )
        chunk = self._data[self._pos : self._pos + length]
        self._pos += length
        return chunk

    def read_byte(self) -> int:
        return self._take(1)[0]

    def read_int(self, width: int) -> int:
        return int.from_bytes(self._take(width), "big")

    def read_int20(self) -> int:
        raw = self._take(3)
        if raw[0] & 0xF0:
            raise FormatError("high nibble of 20-bit length must be zero")
        return ((raw[0] & 0x0F) << 16) | (raw[1] << 8) | raw[2]

    def _read_length(self, token: int) -> int:
        if token == tokens.BINARY_8:
            length = self.read_byte()
        elif token == tokens.BINARY_20:
            length = self.read_int20()
            if length <= 0xFF:
                raise FormatError("BINARY_20 used for a length that fits BINARY_8")
        elif token == tokens.BINARY_32:
            length = self.read_int(4)
            if length <= tokens.MAX_BINARY_20:
                raise FormatError("BINARY_32 used for a length that fits BINARY_20")
        else:
            raise UnknownToken(token)
        if length > self._max_size:
            raise SizeLimitExceeded(length, self._max_size)
        return length

    def _read_list_size(self, token: int) -> int:
        if token == tokens.LIST_8:
            return self.read_byte()
        if token == tokens.LIST_16:
            size = self.read_int(2)
            if size <= 0xFF:
                raise FormatError("LIST_16 used for a size that fits LIST_8")
            return size
        raise UnknownToken(token, f"expected list token, got 0x{token:02x}")

    def read_string(self) -> str:
        token = self.read_byte()
        if token == tokens.LIST_EMPTY:
            return ""
        if token in _BINARY_TOKENS:
            raw = bytes(self._take(self._read_length(token)))
            try:
                value = raw.decode("utf-8")
            except UnicodeDecodeError as err:
                raise FormatError("string is not valid UTF-8") from err
            if not value:
                raise FormatError("empty string must be encoded as LIST_EMPTY")
            if value in tokens.TOKEN_INDEX:
                raise FormatError(f"dictionary string {value!r} encoded raw")
            return value
        value = tokens.lookup_token(token)
        if value is None:
            raise UnknownToken(token)
        return value

    def _read_head(self) -> tuple[str, dict[str, str], bool]:
        size = self._read_list_size(self.read_byte())
        if size == 0:
            raise FormatError("node list must not be empty")

        tag = self.read_string()
        if not tag:
            raise FormatError("node tag must not be empty")

        attrs: dict[str, str] = {}
        for _ in range((size - 1) // 2):
            key = self.read_string()
            if key in attrs:
                raise FormatError(f"duplicate attribute {key!r}")
            attrs[key] = self.read_string()
        return tag, attrs, size % 2 == 0

    def read_node(self) -> Node:
        stack: list[_OpenNode] = []
        while True:
            if len(stack) >= self._max_depth:
                raise FormatError(f"node nesting exceeds depth {self._max_depth}")

            tag, attrs, has_content = self._read_head()
            if not has_content:
                done = Node(tag=tag, attrs=attrs, content=EMPTY)
            else:
                token = self.read_byte()
                if token in _LIST_TOKENS:
                    count = self._read_list_size(token)
                    if count:
                        stack.append(_OpenNode(tag, attrs, count, []))
                        continue
                    done = Node(tag=tag, attrs=attrs, content=Children(()))
                elif token in _BINARY_TOKENS:
                    data = bytes(self._take(self._read_length(token)))
                    done = Node(tag=tag, attrs=attrs, content=Binary(data))
                else:
                    raise UnknownToken(token, f"unexpected content token 0x{token:02x}")

            # Attach the finished node and close every parent it completes.
            while stack:
                parent = stack[-1]
                parent.children.append(done)
                parent.remaining -= 1
                if parent.remaining:
                    break
                stack.pop()
                done = Node(
                    tag=parent.tag,
                    attrs=parent.attrs,
                    content=Children(tuple(parent.children)),
                )
            else:
                return done


def decode(
    data: bytes,
    *,
    max_size: int = DEFAULT_MAX_SIZE,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Node:
    """Decode exactly one node from data.

    Raises:
        UnexpectedEof: data ends before the node is complete.
        UnknownToken: a byte has no meaning in its position.
        SizeLimitExceeded: a declared length is above max_size.
        FormatError: any other structural or canonical-form violation.
    """
    decoder = Decoder(data, max_size=max_size, max_depth=max_depth)
    result = decoder.read_node()
    if decoder.remaining:
        raise FormatError(f"{decoder.remaining} trailing bytes after node")
    return result
