"""Versioned AVL tree building blocks: key formats, nodes and traversal."""

__version__ = "0.1.0"

__all__ = ["iterator", "keyformat", "node"]