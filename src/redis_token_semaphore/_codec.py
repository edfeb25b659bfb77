"""Helpers for the plain-string values the semaphore keeps in Redis.

Tokens and timestamps are stored as bare strings (not JSON) so pools stay
readable by any client speaking the same key layout. Clients created with
``decode_responses=False`` hand back bytes, which is normalised here.
"""

from __future__ import annotations

from typing import Union

RedisValue = Union[str, bytes]


def decode(value: RedisValue) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return value


def decode_optional(value: RedisValue | None) -> str | None:
    return None if value is None else decode(value)


def encode_timestamp(timestamp: float) -> str:
    # repr() of a float round-trips exactly, which the mutex relies on when
    # comparing the value it read with the one GETSET replaced.
    return repr(float(timestamp))


def decode_timestamp(value: RedisValue | None) -> float:
    """Parse a stored timestamp; a missing value reads as 0.0."""
    if value is None:
        return 0.0
    return float(decode(value))
