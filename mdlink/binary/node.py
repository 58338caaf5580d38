"""In-memory representation of binary protocol nodes."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TypeAlias


@dataclass(frozen=True, slots=True)
class Empty:
    """Node without content."""


@dataclass(frozen=True, slots=True)
class Binary:
    """Node carrying raw bytes."""

    data: bytes


@dataclass(frozen=True, slots=True)
class Children:
    """Node carrying an ordered sequence of child nodes."""

    nodes: tuple[Node, ...] = ()

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)


NodeContent: TypeAlias = Empty | Binary | Children

EMPTY = Empty()


@dataclass(frozen=True, slots=True)
class Node:
    """One unit of wire communication.

    Attributes:
        tag: Node name, never empty.
        attrs: Read-only string attributes; keys are unique and keep insertion
            order, which is also the order they are written on the wire.
        content: Empty, Binary or Children.
    """

    tag: str
    attrs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    content: NodeContent = EMPTY

    def __post_init__(self) -> None:
        if not isinstance(self.tag, str) or not self.tag:
            raise ValueError("Node tag must be a non-empty string")
        for key, value in self.attrs.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError(f"Attribute {key!r} must map a string to a string")
        object.__setattr__(self, "attrs", MappingProxyType(dict(self.attrs)))

    @property
    def children(self) -> tuple[Node, ...]:
        """Child nodes, or an empty tuple when content is not Children."""
        if isinstance(self.content, Children):
            return self.content.nodes
        return ()

    @property
    def data(self) -> bytes | None:
        """Binary content, or None when content is not Binary."""
        if isinstance(self.content, Binary):
            return self.content.data
        return None

    def get_child(self, tag: str) -> Node | None:
        """Return the first child with the given tag."""
        for child in self.children:
            if child.tag == tag:
                return child
        return None

    def get_children(self, tag: str) -> list[Node]:
        """Return every child with the given tag, in wire order."""
        return [child for child in self.children if child.tag == tag]

    def attr(self, key: str, default: str | None = None) -> str | None:
        return self.attrs.get(key, default)

    def __repr__(self) -> str:
        if isinstance(self.content, Children):
            body = f"{len(self.content)} children"
        elif isinstance(self.content, Binary):
            body = f"{len(self.content.data)} bytes"
        else:
            body = "empty"
        return f"<Node {self.tag} {dict(self.attrs)!r} {body}>"


def node(
    tag: str,
    attrs: Mapping[str, str] | None = None,
    content: NodeContent | bytes | Iterable[Node] | None = None,
) -> Node:
    """Build a Node, wrapping bytes or an iterable of nodes in their variant."""
    wrapped: NodeContent
    if content is None:
        wrapped = EMPTY
    elif isinstance(content, (Empty, Binary, Children)):
        wrapped = content
    elif isinstance(content, (bytes, bytearray, memoryview)):
        wrapped = Binary(bytes(content))
    elif isinstance(content, str):
        raise TypeError("Node content must be bytes or nodes, not str")
    else:
        wrapped = Children(tuple(content))
    return Node(tag=tag, attrs=dict(attrs or {}), content=wrapped)
