"""Key and value encoding for the set-partitioned key space.

Physical keys are a 4-digit, 1-based set prefix followed by the decimal
text of the logical key: set 0, key 17 is stored as ``"000117"``. All keys
of one set are therefore contiguous in key order and can be scanned by
seeking to the prefix.

Values are decimal text of unsigned 64-bit counters. ``0`` and
``MAX_VALUE`` are never written by the workload; observing either one
means the backend corrupted data.
"""

from __future__ import annotations

PREFIX_WIDTH = 4
MAX_SETS = 9999
MAX_VALUE = 2**64 - 1


def set_prefix(set_id: int) -> str:
    """Return the 4-digit prefix for ``set_id`` (0-based)."""
    if set_id < 0 or set_id + 1 > MAX_SETS:
        raise ValueError(f"set_id must be in [0, {MAX_SETS}), got {set_id}")
    return f"{set_id + 1:0{PREFIX_WIDTH}d}"


def encode_key(set_id: int, key: int) -> str:
    """Build the physical key for logical ``key`` in ``set_id``."""
    if key < 0:
        raise ValueError(f"key must be >= 0, got {key}")
    return set_prefix(set_id) + str(key)


def in_set(physical_key: str, set_id: int) -> bool:
    """Whether ``physical_key`` belongs to ``set_id`` (prefix comparison)."""
    return physical_key[:PREFIX_WIDTH] == set_prefix(set_id)


def set_of(physical_key: str) -> int:
    """Recover the 0-based set id from a physical key."""
    prefix = physical_key[:PREFIX_WIDTH]
    if len(prefix) != PREFIX_WIDTH or not prefix.isdigit():
        raise ValueError(f"not a set-prefixed key: {physical_key!r}")
    return int(prefix) - 1


def compress_key(key: int, conflict_level: int) -> int:
    """Shrink the key range by a factor of 10 per conflict level.

    Higher levels map more random draws onto the same key, which raises
    contention between concurrent transactions.
    """
    for _ in range(conflict_level):
        key //= 10
    return key


def column_group_of(key: int, group_count: int) -> int:
    """Deterministic column group index for a logical key.

    Depends only on the key, so a reader can find the group a key was
    written to without knowing anything about the writer.
    """
    if group_count <= 0:
        raise ValueError(f"group_count must be > 0, got {group_count}")
    return key % group_count


def encode_value(value: int) -> str:
    return str(value)


def decode_value(text: str) -> int:
    """Parse a stored counter. Raises ValueError on non-decimal text."""
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"not a decimal counter: {text[:32]!r}")
    return int(text)


def is_reserved_value(value: int) -> bool:
    """``0`` and ``MAX_VALUE`` are never legitimately stored."""
    return value == 0 or value >= MAX_VALUE
