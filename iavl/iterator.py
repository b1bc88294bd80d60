"""Range iteration over tree nodes and depth-first node traversal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator as TypingIterator
from typing import Optional, Union

from .node import Node, NodeSource

BytesLike = Union[bytes, bytearray, memoryview]


class IteratorError(Exception):
    """Raised or recorded when an iterator cannot work."""


def _opt_bytes(data: Optional[BytesLike]) -> Optional[bytes]:
    return None if data is None else bytes(data)


@dataclass
class TreeSnapshot:
    """A read-only view of a tree at one version: its root and a node loader."""

    root: Optional[Node] = None
    ndb: Optional[NodeSource] = None
    version: int = 0

    def get_node(self, key: bytes) -> Node:
        """Load a persisted node through the snapshot's node source."""
        if self.ndb is None:
            raise IteratorError("tree snapshot has no node source to load from")
        return self.ndb.get_node(key)


class Traversal:
    """Lazy depth-first traversal of a subtree, restricted to a key range.

    Inner nodes are always visited; leaves are visited only when their key
    lies in [start, end) (or [start, end] when inclusive). A start or end of
    None leaves that side unbounded.
    """

    def __init__(
        self,
        node: Optional[Node],
        source: Optional[NodeSource],
        start: Optional[BytesLike],
        end: Optional[BytesLike],
        ascending: bool,
        inclusive: bool,
        post: bool,
    ) -> None:
        self._source = source
        self._start = _opt_bytes(start)
        self._end = _opt_bytes(end)
        self._ascending = ascending
        self._inclusive = inclusive
        self._post = post
        # Each entry is (node, delayed); delayed nodes still need expanding.
        self._stack: list[tuple[Optional[Node], bool]] = [(node, True)]

    def next(self) -> Optional[Node]:
        """Return the next node, or None when the traversal is over."""
        start, end = self._start, self._end
        while self._stack:
            node, delayed = self._stack.pop()
            if not delayed or node is None:
                return node

            key = node.key
            after_start = start is None or start < key
            start_or_after = after_start or start == key
            before_end = end is None or key < end
            if self._inclusive:
                before_end = before_end or key == end

            leaf = node.is_leaf()
            visit = not leaf or (start_or_after and before_end)

            if self._post and visit:
                self._stack.append((node, False))

            if not leaf:
                if self._ascending:
                    if before_end:
                        self._stack.append((node.get_right_node(self._source), True))
                    if after_start:
                        self._stack.append((node.get_left_node(self._source), True))
                else:
                    if after_start:
                        self._stack.append((node.get_left_node(self._source), True))
                    if before_end:
                        self._stack.append((node.get_right_node(self._source), True))

            if not self._post and visit:
                return node
        return None

    def __iter__(self) -> TypingIterator[Node]:
        while (node := self.next()) is not None:
            yield node


_NIL_TREE = "iterator must be created with an immutable tree but the tree was nil"


class Iterator:
    """Iterates over the leaves of a tree snapshot whose keys are in [start, end)."""

    def __init__(
        self,
        start: Optional[BytesLike],
        end: Optional[BytesLike],
        ascending: bool,
        tree: Optional[TreeSnapshot],
    ) -> None:
        self._start = start
        self._end = end
        self._key: Optional[bytes] = None
        self._value: Optional[bytes] = None
        self._valid = False
        self._err: Optional[Exception] = None
        self._traversal: Optional[Traversal] = None

        if tree is None:
            self._err = IteratorError(_NIL_TREE)
        else:
            self._valid = True
            self._traversal = Traversal(
                tree.root, tree, start, end, ascending, False, False
            )
            self.next()

    def domain(self) -> tuple[Optional[BytesLike], Optional[BytesLike]]:
        """The (start, end) the iterator was created with."""
        return self._start, self._end

    def valid(self) -> bool:
        return self._valid

    def key(self) -> Optional[bytes]:
        return self._key

    def value(self) -> Optional[bytes]:
        return self._value

    def next(self) -> None:
        """Advance to the next leaf in range, or become invalid."""
        while self._traversal is not None:
            try:
                node = self._traversal.next()
            except Exception as exc:  # a node could not be loaded
                self._err = exc
                node = None
            if node is None:
                self._traversal = None
                self._valid = False
                return
            if node.subtree_height == 0:
                self._key, self._value = node.key, node.value
                return

    def close(self) -> None:
        """Stop the iteration."""
        self._traversal = None
        self._valid = False

    def error(self) -> Optional[Exception]:
        """The error that stopped or prevented the iteration, if any."""
        return self._err

    def is_fast(self) -> bool:
        return False

    def __iter__(self) -> TypingIterator[tuple[bytes, bytes]]:
        while self._valid:
            yield self._key, self._value  # type: ignore[misc]
            self.next()


class NodeIterator:
    """Pre-order depth-first iteration over persisted nodes from a root key."""

    def __init__(self, root_key: Optional[BytesLike], source: NodeSource) -> None:
        self._source = source
        self._err: Optional[Exception] = None
        self._to_visit: list[Node] = []
        if root_key:
            self._to_visit.append(source.get_node(bytes(root_key)))

    def get_node(self) -> Node:
        """The node currently visited."""
        if not self._to_visit:
            raise IteratorError("node iterator is exhausted")
        return self._to_visit[-1]

    def valid(self) -> bool:
        return self._err is None and bool(self._to_visit)

    def error(self) -> Optional[Exception]:
        return self._err

    def next(self, skip: bool) -> None:
        """Move on; when skip is true the current node's subtree is skipped."""
        if not self.valid():
            return
        node = self._to_visit.pop()
        if skip or node.is_leaf():
            return
        for child_key in (node.right_node_key, node.left_node_key):
            try:
                child = self._source.get_node(child_key)
            except Exception as exc:  # a node could not be loaded
                self._err = exc
                return
            self._to_visit.append(child)


def traverse_in_range(
    node: Optional[Node],
    source: Optional[NodeSource],
    start: Optional[BytesLike],
    end: Optional[BytesLike],
    ascending: bool,
    inclusive: bool,
    post: bool,
) -> TypingIterator[Node]:
    """Yield the nodes of a subtree in range, pre- or post-order."""
    return iter(Traversal(node, source, start, end, ascending, inclusive, post))


def traverse(
    node: Optional[Node], source: Optional[NodeSource], ascending: bool
) -> TypingIterator[Node]:
    """Yield every node of a subtree in pre-order."""
    return traverse_in_range(node, source, None, None, ascending, False, False)


def traverse_post(
    node: Optional[Node], source: Optional[NodeSource], ascending: bool
) -> TypingIterator[Node]:
    """Yield every node of a subtree in post-order."""
    return traverse_in_range(node, source, None, None, ascending, False, True)