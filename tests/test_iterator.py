import itertools

import pytest

from iavl.iterator import (
    Iterator,
    IteratorError,
    NodeIterator,
    Traversal,
    TreeSnapshot,
    traverse,
    traverse_in_range,
    traverse_post,
)
from iavl.node import Node, NodeKey, hash_with_count, make_node


class DictStore:
    def __init__(self):
        self.nodes = {}

    def get_node(self, key):
        try:
            data = self.nodes[bytes(key)]
        except KeyError:
            raise LookupError(f"node {bytes(key).hex()} not found") from None
        return make_node(key, data)


def build(pairs):
    if len(pairs) == 1:
        return Node.new(pairs[0][0], pairs[0][1])
    mid = len(pairs) // 2
    node = Node(key=pairs[mid][0], left_node=build(pairs[:mid]), right_node=build(pairs[mid:]))
    node.calc_height_and_size(None)
    return node


def _assign(node, version, counter, store):
    node.node_key = NodeKey(version, next(counter))
    if not node.is_leaf():
        node.left_node_key = _assign(node.left_node, version, counter, store)
        node.right_node_key = _assign(node.right_node, version, counter, store)
    store.nodes[node.node_key.get_key()] = node.to_bytes()
    return node.node_key.get_key()


def persist(root, left_version=1, right_version=1):
    hash_with_count(root, 1)
    store = DictStore()
    counter = itertools.count(1)
    root.node_key = NodeKey(max(left_version, right_version), next(counter))
    root.left_node_key = _assign(root.left_node, left_version, counter, store)
    root.right_node_key = _assign(root.right_node, right_version, counter, store)
    store.nodes[root.node_key.get_key()] = root.to_bytes()
    return store, root.get_key()


def letters(first="a", stop="z"):
    return [
        (bytes([c]), bytes([c]) * 3)
        for c in range(ord(first), ord(stop))
    ]


ALL = letters()


def snapshot():
    return TreeSnapshot(root=build(ALL))


def test_nil_tree_iterator_is_invalid_with_error():
    itr = Iterator(b"a", b"c", True, None)
    assert itr.valid() is False
    assert itr.domain() == (b"a", b"c")
    assert isinstance(itr.error(), IteratorError)


def test_empty_range_is_invalid():
    itr = Iterator(b"a", b"a", True, snapshot())
    assert itr.valid() is False
    assert list(itr) == []


def test_ranged_ascending():
    itr = Iterator(b"e", b"w", True, snapshot())
    assert itr.valid()
    assert itr.domain() == (b"e", b"w")
    assert itr.error() is None
    assert list(itr) == letters("e", "w")


def test_ranged_descending():
    itr = Iterator(b"e", b"w", False, snapshot())
    assert list(itr) == list(reversed(letters("e", "w")))


def test_full_ascending_and_descending():
    assert list(Iterator(None, None, True, snapshot())) == ALL
    assert list(Iterator(None, None, False, snapshot())) == list(reversed(ALL))


def test_key_value_and_next_protocol():
    itr = Iterator(b"b", b"d", True, snapshot())
    assert (itr.key(), itr.value()) == (b"b", b"bbb")
    itr.next()
    assert (itr.key(), itr.value()) == (b"c", b"ccc")
    itr.next()
    assert itr.valid() is False
    assert itr.is_fast() is False


def test_close_invalidates():
    itr = Iterator(None, None, True, snapshot())
    itr.close()
    assert itr.valid() is False
    assert itr.error() is None


def test_empty_tree_iterator():
    itr = Iterator(None, None, True, TreeSnapshot())
    assert itr.valid() is False
    assert itr.error() is None


def test_persisted_tree_iteration():
    root = build(ALL)
    store, root_key = persist(root)
    loaded = store.get_node(root_key)
    tree = TreeSnapshot(loaded, store, 1)
    assert list(Iterator(None, None, True, tree)) == ALL
    assert list(Iterator(b"x", None, False, tree)) == [(b"y", b"yyy"), (b"x", b"xxx")]


def test_missing_node_records_error():
    root = build(ALL)
    store, root_key = persist(root)
    last = root
    while not last.is_leaf():
        last = last.right_node
    del store.nodes[last.node_key.get_key()]
    tree = TreeSnapshot(store.get_node(root_key), store, 1)
    itr = Iterator(None, None, True, tree)
    collected = list(itr)
    assert 0 < len(collected) < len(ALL)
    assert collected == ALL[: len(collected)]
    assert isinstance(itr.error(), LookupError)
    assert itr.valid() is False


def test_snapshot_without_source_raises():
    with pytest.raises(IteratorError):
        TreeSnapshot().get_node(b"\x00" * 12)


THREE = [(b"a", b"1"), (b"b", b"2"), (b"c", b"3")]


def test_preorder_traversal():
    nodes = list(traverse(build(THREE), None, True))
    assert [n.key for n in nodes] == [b"b", b"a", b"c", b"b", b"c"]
    assert [n.subtree_height for n in nodes] == [2, 0, 1, 0, 0]


def test_preorder_descending_traversal():
    nodes = list(traverse(build(THREE), None, False))
    assert [n.key for n in nodes] == [b"b", b"c", b"c", b"b", b"a"]


def test_postorder_traversal():
    nodes = list(traverse_post(build(THREE), None, True))
    assert [n.key for n in nodes] == [b"a", b"b", b"c", b"c", b"b"]
    assert [n.subtree_height for n in nodes] == [0, 0, 0, 1, 2]


def test_traverse_in_range_inclusive_end():
    root = build(THREE)
    exclusive = [n.key for n in traverse_in_range(root, None, b"b", b"c", True, False, False) if n.is_leaf()]
    inclusive = [n.key for n in traverse_in_range(root, None, b"b", b"c", True, True, False) if n.is_leaf()]
    assert exclusive == [b"b"]
    assert inclusive == [b"b", b"c"]


def test_traversal_of_none_is_empty():
    assert Traversal(None, None, None, None, True, False, False).next() is None


def test_node_iterator_counts_all_nodes():
    root = build(ALL)
    store, root_key = persist(root)
    itr = NodeIterator(root_key, store)
    count = 0
    while itr.valid():
        count += 1
        itr.next(False)
    assert count == len(ALL) * 2 - 1
    assert itr.error() is None


def test_node_iterator_skips_old_subtrees():
    root = build(ALL)
    store, root_key = persist(root, left_version=1, right_version=2)
    total = len(ALL) * 2 - 1
    itr = NodeIterator(root_key, store)
    update_count = 0
    skip_count = 0
    while itr.valid():
        node = itr.get_node()
        update_count += 1
        old = node.node_key.version < 2
        if old:
            skip_count += node.size * 2 - 2
        itr.next(old)
    assert skip_count > 0
    assert total == update_count + skip_count


def test_node_iterator_with_empty_root():
    store = DictStore()
    assert NodeIterator(None, store).valid() is False
    assert NodeIterator(b"", store).valid() is False


def test_node_iterator_skip_root_ends():
    root = build(ALL)
    store, root_key = persist(root)
    itr = NodeIterator(root_key, store)
    assert itr.get_node().key == root.key
    itr.next(True)
    assert itr.valid() is False
    with pytest.raises(IteratorError):
        itr.get_node()


def test_node_iterator_records_missing_child():
    root = build(ALL)
    store, root_key = persist(root)
    del store.nodes[root.right_node.node_key.get_key()]
    itr = NodeIterator(root_key, store)
    itr.next(False)
    assert isinstance(itr.error(), LookupError)
    assert itr.valid() is False