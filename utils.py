# utils.py
import hashlib

import config


def ring_size(m: int = config.M) -> int:
    return 1 << m


def hash_bytes_to_int(data: bytes, m: int = config.M) -> int:
    """
    Hash bytes into an integer in range [0, 2^m).
    Uses the leading m bits of the sha1 digest.
    """
    h = hashlib.sha1(data).digest()
    total_bits = len(h) * 8
    v = int.from_bytes(h, "big")
    if m >= total_bits:
        return v
    return v >> (total_bits - m)


def hash_key(key: str, m: int = config.M) -> int:
    return hash_bytes_to_int(key.encode("utf-8"), m)


def between(a: int, x: int, b: int, m: int = config.M, inclusive_end: bool = False) -> bool:
    """
    Return whether x lies on the clockwise arc from a to b, modulo 2^m.
    The arc is (a, b) or, with inclusive_end, (a, b].
    a == b denotes the whole ring: every x except a itself for the open arc,
    every x for the half-open one.
    """
    mod = ring_size(m)
    a %= mod
    b %= mod
    x %= mod

    if x == b:
        return inclusive_end
    if a == b:
        return x != a
    if a < b:
        return a < x < b
    # wrap-around: (a, mod) U [0, b)
    return x > a or x < b


def distance(a: int, b: int, m: int = config.M) -> int:
    """Clockwise distance from a to b."""
    return (b - a) % ring_size(m)
