"""Prefixed ULID identities for objects, contexts, lanes, events and sessions.

Every identity is ``<prefix>-<ULID>``: a 48-bit millisecond timestamp plus 80
random bits, rendered as 26 Crockford Base32 characters, so identities sort
by creation time within a process.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

from persistor.constants import (
    CONTEXT_ID_PREFIX,
    EVENT_ID_PREFIX,
    LANE_ID_PREFIX,
    OBJECT_ID_PREFIX,
    SESSION_ID_PREFIX,
)

CROCKFORD_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26

_ENTROPY_BYTES: Final[int] = 10
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """Return a new ULID; clock and entropy are injectable for tests."""

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(stamp, bool) or not isinstance(stamp, int):
        raise ValueError(f"timestamp_ms must be an integer, got {type(stamp).__name__}")
    if not 0 <= stamp <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms must be an integer in [0, {_MAX_TIMESTAMP_MS}]")
    entropy = (randbytes or secrets.token_bytes)(_ENTROPY_BYTES)
    if not isinstance(entropy, bytes) or len(entropy) != _ENTROPY_BYTES:
        raise ValueError(f"randbytes must return exactly {_ENTROPY_BYTES} bytes")

    value = (stamp << 80) | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_ALPHABET[digit])
    return "".join(reversed(digits))


def ulid_timestamp_ms(ulid: str) -> int:
    return _decode(ulid) >> 80


def generate_object_id() -> str:
    return f"{OBJECT_ID_PREFIX}-{generate_ulid()}"


def generate_context_id() -> str:
    return f"{CONTEXT_ID_PREFIX}-{generate_ulid()}"


def generate_lane_id() -> str:
    return f"{LANE_ID_PREFIX}-{generate_ulid()}"


def generate_event_id() -> str:
    return f"{EVENT_ID_PREFIX}-{generate_ulid()}"


def generate_session_id() -> str:
    return f"{SESSION_ID_PREFIX}-{generate_ulid()}"


def validate_object_id(value: str) -> None:
    _validate_prefixed(value, OBJECT_ID_PREFIX)


def validate_event_id(value: str) -> None:
    _validate_prefixed(value, EVENT_ID_PREFIX)


def _validate_prefixed(value: object, prefix: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{prefix} id must be a string, got {type(value).__name__}")
    head, separator, ulid = value.partition("-")
    if not separator or head != prefix:
        raise ValueError(f"expected prefix {prefix!r} in {value!r}")
    _decode(ulid)


def _decode(ulid: str) -> int:
    if not isinstance(ulid, str) or len(ulid) != ULID_LENGTH:
        raise ValueError(f"ULID must be {ULID_LENGTH} characters: {ulid!r}")
    value = 0
    for char in ulid:
        digit = CROCKFORD_ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"invalid ULID character {char!r} in {ulid!r}")
        value = value * 32 + digit
    if value >> 128:
        raise ValueError(f"ULID exceeds 128 bits: {ulid!r}")
    return value


__all__ = [
    "CROCKFORD_ALPHABET",
    "ULID_LENGTH",
    "generate_context_id",
    "generate_event_id",
    "generate_lane_id",
    "generate_object_id",
    "generate_session_id",
    "generate_ulid",
    "ulid_timestamp_ms",
    "validate_event_id",
    "validate_object_id",
]
