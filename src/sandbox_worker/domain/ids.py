"""Identifiers for sessions and locally minted jobs.

Session ids are ULIDs: 48 bits of millisecond time followed by 80 random bits,
rendered as 26 Crockford Base32 characters. They sort by creation time, which
keeps ``<root>/session-<id>`` listings in creation order.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

from sandbox_worker.constants import SESSION_DIR_PREFIX

ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
JOB_ID_PREFIX: Final[str] = "job"

_RANDOM_BYTES: Final[int] = 10
_RANDOM_BITS: Final[int] = _RANDOM_BYTES * 8
_SYMBOL_VALUES: Final[dict[str, int]] = {symbol: value for value, symbol in enumerate(ALPHABET)}

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    """Return a new ULID; both sources are injectable for deterministic tests."""
    millis = _current_millis() if timestamp_ms is None else timestamp_ms
    if isinstance(millis, bool) or not isinstance(millis, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(millis).__name__}")
    if millis < 0 or millis > ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {millis} not in 0..{ULID_MAX_TIMESTAMP_MS}")

    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"random source must return exactly {_RANDOM_BYTES} bytes")

    value = (millis << _RANDOM_BITS) | int.from_bytes(bytes(entropy), "big")
    symbols: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        symbols.append(ALPHABET[digit])
    return "".join(reversed(symbols))


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed ULID."""
    _decode(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _decode(value) >> _RANDOM_BITS


def generate_session_id(*, timestamp_ms: int | None = None) -> str:
    return generate_ulid(timestamp_ms=timestamp_ms)


def validate_session_id(session_id: str) -> None:
    validate_ulid(session_id)


def session_dir_name(session_id: str) -> str:
    """Directory name used for a session under the session root."""
    validate_session_id(session_id)
    return f"{SESSION_DIR_PREFIX}{session_id}"


def generate_job_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """Id for a job submitted without one, e.g. an ad-hoc ``sandbox-worker run``."""
    return f"{JOB_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def _current_millis() -> int:
    return time.time_ns() // 1_000_000


def _decode(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    decoded = 0
    for position, symbol in enumerate(value.upper()):
        digit = _SYMBOL_VALUES.get(symbol)
        if digit is None:
            raise ValueError(f"invalid ULID character {value[position]!r} at index {position}")
        decoded = decoded * 32 + digit
    # 26 symbols carry 130 bits; the leading symbol may only use the low 3.
    if decoded >> 128:
        raise ValueError(f"ulid overflow: leading symbol {value[0]!r} exceeds 128 bits")
    return decoded


__all__ = [
    "ALPHABET",
    "JOB_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "RandomSource",
    "generate_job_id",
    "generate_session_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "session_dir_name",
    "validate_session_id",
    "validate_ulid",
]
