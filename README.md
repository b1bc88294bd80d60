# iavl

Building blocks for a versioned, Merkle-hashed AVL tree over byte keys and
values.

## What it provides

- `iavl.keyformat`: fixed-width, lexicographically sortable database keys.
  `KeyFormat` builds keys from a one-byte prefix and integer or byte
  segments. If the last segment width is 0, that segment is unbounded.
  `KeyFormat.scan` decodes the segments again as the kinds you name with
  `SegmentType`. `FastPrefixFormatter` is a lean variant for a single
  prefixed field.
- `iavl.node`: tree nodes.
  - `NodeKey` holds a version and a nonce, encoded as 12 big-endian bytes.
    `get_root_key(version)` gives the key of a version's root.
  - `Node` has a binary encoding: `Node.to_bytes` writes it, and
    `make_node` and `make_legacy_node` read it.
  - Hashing is SHA-256, through `Node.compute_hash` and `hash_with_count`.
  - A node also offers `validate`, lookups by key (`has`, `get`) and by
    index (`get_by_index`), and AVL height, size and balance bookkeeping
    (`calc_height_and_size`, `calc_balance`).
- `iavl.iterator`: walking a tree.
  - Depth-first traversal in pre- or post-order, over a key range:
    `Traversal`, `traverse`, `traverse_post` and `traverse_in_range`.
  - `Iterator` yields the key/value pairs of a `TreeSnapshot`. It covers
    `[start, end)`, in ascending or descending order.
  - `NodeIterator` walks stored nodes from a root key in pre-order and can
    skip whole subtrees.

Nodes that are not held in memory are fetched through a `NodeSource`. This
is any object with a `get_node(key)` method.

## Installation

```
pip install .
```

With test dependencies:

```
pip install ".[test]"
pytest
```

## Example

```python
from iavl.keyformat import KeyFormat, SegmentType

kf = KeyFormat(b"e", 8, 8)
key = kf.key(100, 200)
version, nonce = kf.scan(key, SegmentType.INT64, SegmentType.INT64)
assert (version, nonce) == (100, 200)
```

```python
from iavl.node import Node, NodeKey, make_node

leaf = Node.new(b"key", b"value")
leaf.node_key = NodeKey(3, 1)
encoded = leaf.to_bytes()
decoded = make_node(leaf.get_key(), encoded)
assert decoded.value == b"value"
```

```python
from iavl.iterator import Iterator, TreeSnapshot
from iavl.node import Node

left, right = Node.new(b"a", b"1"), Node.new(b"b", b"2")
root = Node(key=b"b", left_node=left, right_node=right)
root.calc_height_and_size(None)

assert list(Iterator(None, None, True, TreeSnapshot(root=root))) == [
    (b"a", b"1"),
    (b"b", b"2"),
]
```

## Errors

Malformed node encodings and invalid nodes raise `NodeError` or one of its
subclasses: `CloneLeafNodeError`, `EmptyChildError` and
`MissingNodeKeyError`.

`Iterator` and `NodeIterator` do not raise when they fail. They stop, and
the failure is available from their `error()` method. An `Iterator` created
without a tree reports an `IteratorError` there.

## What it does not do

The package holds no node database and no persistence. Nodes are loaded
only through the `NodeSource` you supply.

There is no mutable tree either. The package has no insertion, removal or
rebalancing by rotation, and it cannot save, load or delete versions. It
provides the node, key and traversal pieces on which such a tree is built.