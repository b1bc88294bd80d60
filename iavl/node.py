"""Tree nodes, node keys and their binary encoding."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

MODE_LEGACY_LEFT_NODE = 0x01
MODE_LEGACY_RIGHT_NODE = 0x02

_HASH_SIZE = 32
_INT8_MIN, _INT8_MAX = -128, 127
_UINT32_MAX = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1


class NodeError(ValueError):
    """Raised when a node is malformed or cannot be encoded or decoded."""


class CloneLeafNodeError(NodeError):
    """Raised on an attempt to clone a leaf node."""


class EmptyChildError(NodeError):
    """Raised when an inner node is missing a loaded child."""


class MissingNodeKeyError(NodeError):
    """Raised when a node key required for encoding is absent."""


@runtime_checkable
class NodeSource(Protocol):
    """Anything that can load a persisted node by its storage key."""

    def get_node(self, key: bytes) -> "Node":
        """Return the node stored under the given key."""


# --- varint helpers -------------------------------------------------------


def _uvarint(value: int) -> bytes:
    out = bytearray()
    value &= _UINT64_MASK
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _zigzag(value: int) -> int:
    return (value << 1) if value >= 0 else ((-value) << 1) - 1


def _encode_varint(value: int) -> bytes:
    return _uvarint(_zigzag(value))


def _varint_size(value: int) -> int:
    return len(_encode_varint(value))


def _encode_bytes(data: Optional[bytes]) -> bytes:
    data = data or b""
    return _uvarint(len(data)) + bytes(data)


def _bytes_size(data: Optional[bytes]) -> int:
    data = data or b""
    return len(_uvarint(len(data))) + len(data)


def _encode_hash(data: Optional[bytes]) -> bytes:
    return bytes([_HASH_SIZE]) + bytes(data or b"")


class _Reader:
    """Sequential decoder over an encoded node."""

    def __init__(self, buf: bytes) -> None:
        self._buf = bytes(buf)
        self._pos = 0

    def uvarint(self) -> int:
        result = 0
        shift = 0
        for index in range(10):
            if self._pos >= len(self._buf):
                raise NodeError("buffer too small")
            byte = self._buf[self._pos]
            self._pos += 1
            if byte < 0x80:
                if index == 9 and byte > 1:
                    raise NodeError("varint overflow")
                return result | (byte << shift)
            result |= (byte & 0x7F) << shift
            shift += 7
        raise NodeError("varint overflow")

    def varint(self) -> int:
        raw = self.uvarint()
        return (raw >> 1) ^ -(raw & 1)

    def bytes(self) -> bytes:
        size = self.uvarint()
        remaining = len(self._buf) - self._pos
        if size > remaining:
            raise NodeError(
                f"insufficient bytes decoding []byte of length {size}"
            )
        data = self._buf[self._pos:self._pos + size]
        self._pos += size
        return data


def _read(what: str, reader_call):
    try:
        return reader_call()
    except NodeError as exc:
        raise NodeError(f"decoding {what}, {exc}") from exc


# --- node keys ------------------------------------------------------------


@dataclass(frozen=True)
class NodeKey:
    """Storage key of a node: the version it was written at and a nonce."""

    version: int
    nonce: int

    def get_key(self) -> bytes:
        """The 12-byte big-endian encoding of version and nonce."""
        return (self.version & _UINT64_MASK).to_bytes(8, "big") + (
            self.nonce & _UINT32_MAX
        ).to_bytes(4, "big")

    @classmethod
    def from_key(cls, key: bytes) -> "NodeKey":
        """Decode a node key from its first 12 bytes."""
        key = bytes(key)
        if len(key) < 12:
            raise NodeError(f"node key of {len(key)} bytes is shorter than 12")
        return cls(
            version=int.from_bytes(key[:8], "big", signed=True),
            nonce=int.from_bytes(key[8:12], "big"),
        )

    def __str__(self) -> str:
        return f"({self.version}, {self.nonce})"


def get_root_key(version: int) -> bytes:
    """The storage key of the root node saved at the given version."""
    return NodeKey(version, 1).get_key()


def _show_bytes(data: Optional[bytes]) -> str:
    return "".join(
        chr(b) if 0x21 <= b <= 0x7E else f"{b:02X}" for b in (data or b"")
    )


# --- nodes ----------------------------------------------------------------


@dataclass
class Node:
    """A node of the tree: a leaf holding a value, or an inner node."""

    key: Optional[bytes] = None
    value: Optional[bytes] = None
    hash: Optional[bytes] = None
    node_key: Optional[NodeKey] = None
    left_node_key: Optional[bytes] = None
    right_node_key: Optional[bytes] = None
    size: int = 0
    left_node: Optional["Node"] = None
    right_node: Optional["Node"] = None
    subtree_height: int = 0
    is_legacy: bool = False

    @classmethod
    def new(cls, key: bytes, value: Optional[bytes]) -> "Node":
        """A new unsaved leaf."""
        return cls(key=key, value=value, subtree_height=0, size=1)

    def get_key(self) -> bytes:
        """The storage key: the hash for legacy nodes, else the node key."""
        if self.is_legacy:
            return self.hash  # type: ignore[return-value]
        if self.node_key is None:
            raise MissingNodeKeyError("node has no node key")
        return self.node_key.get_key()

    def is_leaf(self) -> bool:
        return self.subtree_height == 0

    def __str__(self) -> str:
        child = ""
        if self.left_node is not None and self.left_node.node_key is not None:
            child += f"{{left {self.left_node.node_key}}}"
        if self.right_node is not None and self.right_node.node_key is not None:
            child += f"{{right {self.right_node.node_key}}}"
        node_key = "<nil>" if self.node_key is None else str(self.node_key)
        return (
            f"Node{{{_show_bytes(self.key)}:{_show_bytes(self.value)}@ "
            f"{node_key}:{(self.left_node_key or b'').hex()}-"
            f"{(self.right_node_key or b'').hex()} "
            f"{self.size}-{self.subtree_height} {(self.hash or b'').hex()}}}#{child}\n"
        )

    def clone(self, source: Optional[NodeSource]) -> "Node":
        """A shallow unsaved copy of an inner node with its hash cleared."""
        if self.is_leaf():
            raise CloneLeafNodeError("attempt to copy a leaf node")
        left, right = self.left_node, self.right_node
        if self.node_key is not None:
            left = self.get_left_node(source)
            right = self.get_right_node(source)
            self.left_node = None
            self.right_node = None
        return Node(
            key=self.key,
            subtree_height=self.subtree_height,
            size=self.size,
            left_node_key=self.left_node_key,
            right_node_key=self.right_node_key,
            left_node=left,
            right_node=right,
        )

    def has(self, source: Optional[NodeSource], key: bytes) -> bool:
        """Whether the subtree holds the given key."""
        node = self
        while True:
            if node.key == key:
                return True
            if node.is_leaf():
                return False
            if key < node.key:
                node = node.get_left_node(source)
            else:
                node = node.get_right_node(source)

    def get(self, source: Optional[NodeSource], key: bytes) -> tuple[int, Optional[bytes]]:
        """Return (index, value) for a key; value is None when absent.

        The index is the position the key has, or would have, among the
        leaves sorted by key.
        """
        if self.is_leaf():
            if self.key < key:
                return 1, None
            if self.key > key:
                return 0, None
            return 0, self.value
        if key < self.key:
            return self.get_left_node(source).get(source, key)
        right = self.get_right_node(source)
        index, value = right.get(source, key)
        return index + self.size - right.size, value

    def get_by_index(
        self, source: Optional[NodeSource], index: int
    ) -> tuple[Optional[bytes], Optional[bytes]]:
        """Return (key, value) of the leaf at the index, or (None, None)."""
        if self.is_leaf():
            if index == 0:
                return self.key, self.value
            return None, None
        left = self.get_left_node(source)
        if index < left.size:
            return left.get_by_index(source, index)
        return self.get_right_node(source).get_by_index(source, index - left.size)

    def compute_hash(self, version: int) -> Optional[bytes]:
        """Hash this node, assuming child hashes are already set.

        Returns None if the node cannot be hashed.
        """
        if self.hash is not None:
            return self.hash
        try:
            data = self.write_hash_bytes(version)
        except NodeError:
            return None
        self.hash = hashlib.sha256(data).digest()
        return self.hash

    def validate(self) -> None:
        """Raise NodeError if the node contents are inconsistent."""
        if self.key is None:
            raise NodeError("key cannot be nil")
        if self.node_key is None:
            raise NodeError("nodeKey cannot be nil")
        if self.node_key.version <= 0:
            raise NodeError("version must be greater than 0")
        if self.subtree_height < 0:
            raise NodeError("height cannot be less than 0")
        if self.size < 1:
            raise NodeError("size must be at least 1")
        if self.subtree_height == 0:
            if self.value is None:
                raise NodeError("value cannot be nil for leaf node")
            if (
                self.left_node_key is not None
                or self.left_node is not None
                or self.right_node_key is not None
                or self.right_node is not None
            ):
                raise NodeError("leaf node cannot have children")
            if self.size != 1:
                raise NodeError("leaf nodes must have size 1")
        elif self.value is not None:
            raise NodeError("value must be nil for non-leaf node")

    def write_hash_bytes(self, version: int) -> bytes:
        """The bytes whose digest is the node hash; child hashes must be set."""
        out = bytearray()
        out += _encode_varint(self.subtree_height)
        out += _encode_varint(self.size)
        out += _encode_varint(version)
        if self.is_leaf():
            out += _encode_bytes(self.key)
            out += _encode_hash(hashlib.sha256(self.value or b"").digest())
        else:
            if self.left_node is None or self.right_node is None:
                raise EmptyChildError("found an empty child")
            out += _encode_hash(self.left_node.hash)
            out += _encode_hash(self.right_node.hash)
        return bytes(out)

    def encoded_size(self) -> int:
        """Estimated size of the serialized node."""
        n = 1 + _varint_size(self.size) + _bytes_size(self.key)
        if self.is_leaf():
            return n + _bytes_size(self.value)
        n += _bytes_size(self.hash)
        for child_key in (self.left_node_key, self.right_node_key):
            if child_key is not None:
                nk = NodeKey.from_key(child_key)
                n += _varint_size(nk.version) + _varint_size(nk.nonce)
        return n

    def to_bytes(self) -> bytes:
        """Serialize the node for storage."""
        out = bytearray()
        out += _encode_varint(self.subtree_height)
        out += _encode_varint(self.size)
        out += _encode_bytes(self.key)
        if self.is_leaf():
            out += _encode_bytes(self.value)
            return bytes(out)
        out += _encode_hash(self.hash)
        if self.left_node_key is None:
            raise MissingNodeKeyError("node.leftNodeKey was empty in writeBytes")
        mode = 0
        if len(self.left_node_key) == _HASH_SIZE:
            mode += MODE_LEGACY_LEFT_NODE
        if self.right_node_key is not None and len(self.right_node_key) == _HASH_SIZE:
            mode += MODE_LEGACY_RIGHT_NODE
        out += _encode_varint(mode)
        out += self._child_key_bytes(self.left_node_key, mode & MODE_LEGACY_LEFT_NODE)
        if self.right_node_key is None:
            raise MissingNodeKeyError("node.rightNodeKey was empty in writeBytes")
        out += self._child_key_bytes(self.right_node_key, mode & MODE_LEGACY_RIGHT_NODE)
        return bytes(out)

    @staticmethod
    def _child_key_bytes(child_key: bytes, legacy: int) -> bytes:
        if legacy:
            return _encode_hash(child_key)
        nk = NodeKey.from_key(child_key)
        return _encode_varint(nk.version) + _encode_varint(nk.nonce)

    def get_left_node(self, source: Optional[NodeSource]) -> "Node":
        """The left child, loaded from the source if not in memory."""
        if self.left_node is not None:
            return self.left_node
        if source is None:
            raise EmptyChildError("left child is not loaded and there is no source")
        return source.get_node(self.left_node_key)

    def get_right_node(self, source: Optional[NodeSource]) -> "Node":
        """The right child, loaded from the source if not in memory."""
        if self.right_node is not None:
            return self.right_node
        if source is None:
            raise EmptyChildError("right child is not loaded and there is no source")
        return source.get_node(self.right_node_key)

    def calc_height_and_size(self, source: Optional[NodeSource]) -> None:
        """Recompute height and size from the children."""
        left = self.get_left_node(source)
        right = self.get_right_node(source)
        self.subtree_height = max(left.subtree_height, right.subtree_height) + 1
        self.size = left.size + right.size

    def calc_balance(self, source: Optional[NodeSource]) -> int:
        """Left height minus right height."""
        left = self.get_left_node(source)
        right = self.get_right_node(source)
        return left.subtree_height - right.subtree_height


def hash_with_count(node: Optional[Node], version: int) -> bytes:
    """Hash a node and its in-memory descendants recursively.

    An empty tree hashes to the digest of empty input.
    """
    if node is None:
        return hashlib.sha256(b"").digest()
    if node.hash is not None:
        return node.hash
    hash_with_count(node.left_node, version)
    hash_with_count(node.right_node, version)
    node.hash = hashlib.sha256(node.write_hash_bytes(version)).digest()
    return node.hash


def _read_child_key(reader: _Reader, legacy: int, side: str) -> bytes:
    if legacy:
        return _read(f"legacy node.{side}NodeKey", reader.bytes)
    version = _read(f"node.{side}NodeKey.version", reader.varint)
    nonce = _read(f"node.{side}NodeKey.nonce", reader.varint)
    if not 0 <= nonce <= _UINT32_MAX:
        raise NodeError(f"invalid {side}NodeKey.nonce, out of int32 range")
    return NodeKey(version, nonce).get_key()


def make_node(nk: bytes, buf: bytes) -> Node:
    """Decode a node stored under node key bytes nk."""
    reader = _Reader(buf)
    height = _read("node.height", reader.varint)
    if not _INT8_MIN <= height <= _INT8_MAX:
        raise NodeError("invalid height, out of int8 range")
    size = _read("node.size", reader.varint)
    key = _read("node.key", reader.bytes)
    node = Node(
        subtree_height=height,
        size=size,
        node_key=NodeKey.from_key(nk),
        key=key,
    )
    if node.is_leaf():
        node.value = _read("node.value", reader.bytes)
        node.compute_hash(node.node_key.version)
        return node
    node.hash = _read("node.hash", reader.bytes)
    mode = _read("mode", reader.varint)
    if not 0 <= mode <= 3:
        raise NodeError("invalid mode")
    node.left_node_key = _read_child_key(reader, mode & MODE_LEGACY_LEFT_NODE, "left")
    node.right_node_key = _read_child_key(reader, mode & MODE_LEGACY_RIGHT_NODE, "right")
    return node


def make_legacy_node(hash_: bytes, buf: bytes) -> Node:
    """Decode a node stored in the legacy, hash-addressed format."""
    reader = _Reader(buf)
    height = _read("node.height", reader.varint)
    if not _INT8_MIN <= height <= _INT8_MAX:
        raise NodeError("invalid height, must be int8")
    size = _read("node.size", reader.varint)
    version = _read("node.version", reader.varint)
    key = _read("node.key", reader.bytes)
    node = Node(
        subtree_height=height,
        size=size,
        node_key=NodeKey(version, 0),
        key=key,
        hash=hash_,
        is_legacy=True,
    )
    if node.is_leaf():
        node.value = _read("node.value", reader.bytes)
    else:
        node.left_node_key = _read("node.leftHash", reader.bytes)
        node.right_node_key = _read("node.rightHash", reader.bytes)
    return node