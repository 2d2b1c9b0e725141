"""Partition balancers: round robin and xxHash64 of the message key."""

from __future__ import annotations

import struct
import threading
from collections.abc import Sequence

from queuekit.kafka.message import Message

_MASK = (1 << 64) - 1
_P1 = 11400714785074694791
_P2 = 14029467366897019727
_P3 = 1609587929392839161
_P4 = 9650029242287828579
_P5 = 2870177450012600261


def _rotl(x: int, r: int) -> int:
    return ((x << r) | (x >> (64 - r))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    return (_rotl(acc, 31) * _P1) & _MASK


def _merge(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


def xxhash64(data: bytes, seed: int = 0) -> int:
    """The 64-bit xxHash of ``data``."""
    data = bytes(data)
    length = len(data)
    seed &= _MASK
    pos = 0

    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK
        v2 = (seed + _P2) & _MASK
        v3 = seed
        v4 = (seed - _P1) & _MASK
        stripes_end = length - length % 32
        for a, b, c, d in struct.iter_unpack("<4Q", data[:stripes_end]):
            v1 = _round(v1, a)
            v2 = _round(v2, b)
            v3 = _round(v3, c)
            v4 = _round(v4, d)
        pos = stripes_end
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for v in (v1, v2, v3, v4):
            h = _merge(h, v)
    else:
        h = (seed + _P5) & _MASK

    h = (h + length) & _MASK

    while pos + 8 <= length:
        (lane,) = struct.unpack_from("<Q", data, pos)
        h ^= _round(0, lane)
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK
        pos += 8
    if pos + 4 <= length:
        (lane,) = struct.unpack_from("<I", data, pos)
        h ^= (lane * _P1) & _MASK
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK
        pos += 4
    for byte in data[pos:]:
        h ^= (byte * _P5) & _MASK
        h = (_rotl(h, 11) * _P1) & _MASK

    h ^= h >> 33
    h = (h * _P2) & _MASK
    h ^= h >> 29
    h = (h * _P3) & _MASK
    h ^= h >> 32
    return h


class RoundRobin:
    """Hands out partitions in turn, ``chunk_size`` messages each."""

    def __init__(self, chunk_size: int = 1) -> None:
        self.chunk_size = max(1, chunk_size)
        self._lock = threading.Lock()
        self._counter = 0

    def balance(self, message: Message, partitions: Sequence[int]) -> int:
        with self._lock:
            offset = self._counter // self.chunk_size
            self._counter = (self._counter + 1) & 0xFFFFFFFF
        return partitions[offset % len(partitions)]


class XXHashBalancer:
    """Routes keyed messages by xxHash64 of the key, the rest round robin."""

    def __init__(self) -> None:
        self._round_robin = RoundRobin()

    def balance(self, message: Message, partitions: Sequence[int]) -> int:
        if not message.key:
            return self._round_robin.balance(message, partitions)
        return partitions[xxhash64(message.key) % len(partitions)]