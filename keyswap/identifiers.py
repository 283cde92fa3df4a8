"""
Time-ordered identifier generation (UUID version 7, RFC 9562).

Layout, most significant bits first:

    48 bits  unix_ts_ms
     4 bits  version (0b0111)
    12 bits  rand_a
     2 bits  variant (0b10)
    62 bits  rand_b

The canonical text form sorts the same way as the 16 bytes, so storing the
36-character string keeps chronological order for distinct milliseconds.
Identifiers generated within the same millisecond are ordered by their
random bits only.
"""

import re
import secrets
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MAX_UNIX_MS = (1 << 48) - 1

# Seconds fraction of any length; fromisoformat before 3.11 wants exactly 3 or 6 digits
_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")


def timestamp_ms(value) -> int:
    """
    Convert a seed timestamp to unix milliseconds.

    Accepts:
        datetime (naive values are treated as UTC)
        int / float epoch seconds
        ISO-8601 text, e.g. "2024-05-01 12:30:00" or "2024-05-01T12:30:00.123+00:00"

    Raises:
        ValueError for unsupported or out-of-range values
    """
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        ms = (dt - _EPOCH) // timedelta(milliseconds=1)
    elif isinstance(value, (int, float)):
        ms = round(value * 1000)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Unparseable timestamp: {value!r}") from e
        return timestamp_ms(dt)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if not 0 <= ms <= _MAX_UNIX_MS:
        raise ValueError(f"Timestamp out of range for UUIDv7: {value!r}")
    return ms


def uuid7(seed=None, clock: Callable[[], float] = time.time) -> uuid.UUID:
    """Build a UUIDv7 for *seed*, or for the current time when seed is None."""
    ms = timestamp_ms(seed) if seed is not None else timestamp_ms(clock())
    rand = int.from_bytes(secrets.token_bytes(10), "big")
    rand_a = rand >> 68  # top 12 of 80 bits
    rand_b = rand & ((1 << 62) - 1)
    value = (ms << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    return uuid.UUID(int=value)


def uuid7_timestamp(value) -> datetime:
    """Return the UTC datetime embedded in a UUIDv7 (millisecond precision)."""
    u = value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    return _EPOCH + timedelta(milliseconds=u.int >> 80)


def is_uuid7(value) -> bool:
    """True if *value* is a canonical-text or UUID object with version 7 and RFC variant."""
    try:
        u = value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return False
    if not isinstance(value, uuid.UUID) and str(u) != str(value):
        return False
    return u.version == 7 and u.variant == uuid.RFC_4122


class IdentifierGenerator:
    """
    Produces new-format identifiers as canonical text.

    Stateless apart from the injected clock, so safe to share across threads.
    If the clock raises, the error propagates: a missing time source is a
    configuration error, not something to paper over.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def generate(self, seed=None) -> str:
        return str(uuid7(seed, clock=self._clock))
