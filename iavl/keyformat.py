"""Fixed-width, lexicographically sortable byte key formats."""

from __future__ import annotations

import enum
from typing import Union

BytesLike = Union[bytes, bytearray, memoryview]


class SegmentType(enum.Enum):
    """How a scanned key segment is decoded."""

    INT64 = "int64"
    UINT64 = "uint64"
    INT32 = "int32"
    UINT32 = "uint32"
    BYTES = "bytes"
    BIG_INT = "big_int"


_FIXED_WIDTHS = {
    SegmentType.INT64: (8, True),
    SegmentType.UINT64: (8, False),
    SegmentType.INT32: (4, True),
    SegmentType.UINT32: (4, False),
}


def _prefix_byte(prefix: int | BytesLike | str) -> int:
    if isinstance(prefix, bool):
        raise TypeError("prefix must be a single byte")
    if isinstance(prefix, int):
        if not 0 <= prefix <= 0xFF:
            raise ValueError(f"prefix {prefix} is not a byte")
        return prefix
    if isinstance(prefix, str):
        prefix = prefix.encode("latin-1")
    if isinstance(prefix, (bytes, bytearray, memoryview)) and len(prefix) == 1:
        return bytes(prefix)[0]
    raise TypeError("prefix must be a single byte")


def _as_bytes(segment: object) -> bytes:
    if isinstance(segment, (bytes, bytearray, memoryview)):
        return bytes(segment)
    raise TypeError(f"key segment must be bytes, not {type(segment).__name__}")


def _format(value: object, width: int) -> bytes:
    """Encode an argument of KeyFormat.key as big-endian bytes.

    Integers take four bytes when their segment is four bytes wide and eight
    bytes otherwise; negative values are stored in two's complement.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, int) and not isinstance(value, bool):
        size = 4 if width == 4 else 8
        bits = 8 * size
        if not -(1 << (bits - 1)) <= value < (1 << bits):
            raise ValueError(f"integer {value} does not fit in {size} bytes")
        return (value % (1 << bits)).to_bytes(size, "big")
    raise TypeError(
        f"key format does not support formatting value of type {type(value).__name__}: {value!r}"
    )


def _decode(kind: SegmentType, value: bytes) -> int | bytes:
    if not isinstance(kind, SegmentType):
        raise TypeError(f"key format cannot scan a value of kind {kind!r}")
    if kind is SegmentType.BYTES:
        return bytes(value)
    if kind is SegmentType.BIG_INT:
        return int.from_bytes(value, "big")
    width, signed = _FIXED_WIDTHS[kind]
    if len(value) < width:
        raise ValueError(
            f"segment of {len(value)} bytes is too short for a {kind.value} value"
        )
    return int.from_bytes(value[:width], "big", signed=signed)


class KeyFormat:
    """A single-byte prefix followed by fixed-width big-endian segments.

    If the last segment width is 0 that segment is unbounded and takes any
    length.
    """

    def __init__(self, prefix: int | BytesLike | str, *args: int) -> None:
        layout = tuple(args)
        for index, width in enumerate(layout):
            if width < 0:
                raise ValueError(f"segment width {width} is negative")
            if width == 0 and index != len(layout) - 1:
                raise ValueError("only the last item in a key format can be 0")
        self._prefix = _prefix_byte(prefix)
        self._layout = layout
        self._length = 1 + sum(layout)
        self._unbounded = bool(layout) and layout[-1] == 0

    def key_bytes(self, *args: BytesLike) -> bytes:
        """Join byte segments into a key, left-padding each to its width."""
        if len(args) > len(self._layout):
            raise ValueError(
                f"key format is given {len(args)} segments but has only {len(self._layout)}"
            )
        out = bytearray([self._prefix])
        for index, (segment, width) in enumerate(zip(args, self._layout)):
            data = _as_bytes(segment)
            if width == 0:
                out += data
                continue
            if len(data) > width:
                raise ValueError(
                    f"length of segment {data.hex().upper()} is longer than the {width} bytes "
                    f"required by layout for segment {index}"
                )
            out += data.rjust(width, b"\x00")
        return bytes(out)

    def key(self, *args: int | BytesLike) -> bytes:
        """Format integers and byte strings into a key.

        With no arguments the bare prefix is returned.
        """
        if len(args) > len(self._layout):
            raise ValueError(
                f"key format is given {len(args)} args but format only has "
                f"{len(self._layout)} segments"
            )
        return self.key_bytes(
            *(_format(arg, width) for arg, width in zip(args, self._layout))
        )

    def scan_bytes(self, key: BytesLike) -> list[bytes]:
        """Split a key into its segments, stopping at the first one missing."""
        key = bytes(key)
        segments: list[bytes] = []
        end = 1
        for width in self._layout:
            end += width
            if end > len(key):
                break
            if width == 0:
                segments.append(key[end:])
                break
            segments.append(key[end - width:end])
        return segments

    def scan(self, key: BytesLike, *args: SegmentType) -> tuple[int | bytes, ...]:
        """Decode the leading segments of a key as the given kinds."""
        segments = self.scan_bytes(key)
        if len(args) > len(segments):
            raise ValueError(
                f"key format scan is given {len(args)} args but key "
                f"{bytes(key).hex().upper()} has only {len(segments)} segments"
            )
        return tuple(_decode(kind, segment) for kind, segment in zip(args, segments))

    def length(self) -> int:
        """Full key length including the prefix byte."""
        return self._length

    def prefix(self) -> str:
        """The prefix byte as a one-character string."""
        return chr(self._prefix)


class FastPrefixFormatter:
    """A single prefix byte followed by one fixed-length field."""

    def __init__(self, prefix: int | BytesLike | str, length: int) -> None:
        if length < 0:
            raise ValueError(f"length {length} is negative")
        self._prefix = _prefix_byte(prefix)
        self._length = length

    def key(self, bz: BytesLike) -> bytes:
        """Prefix the bytes, truncating or zero-filling to the field length."""
        data = _as_bytes(bz)[: self._length]
        return bytes([self._prefix]) + data.ljust(self._length, b"\x00")

    def scan(self, key: BytesLike, kind: SegmentType) -> int | bytes:
        """Decode everything after the prefix byte as the given kind."""
        return _decode(kind, bytes(key)[1:])

    def key_int64(self, value: int) -> bytes:
        """Prefix an integer written as eight big-endian bytes."""
        if self._length < 8:
            raise ValueError(f"field of {self._length} bytes cannot hold an int64")
        return self.key(_format(value, 8))

    def prefix(self) -> bytes:
        """The prefix as a one-byte string."""
        return bytes([self._prefix])

    def length(self) -> int:
        """Full key length including the prefix byte."""
        return 1 + self._length