"""
Object-id generation and timestamp utilities (stdlib-only).

Every execution record is keyed by a 12-byte object identifier rendered as
24 hex characters, and every date on the record is a timezone-aware UTC
datetime. This module is the single place that produces both.

Features:
    - **generate_object_id():** 12-byte, time-prefixed identifier
    - **utc_now():** Timezone-aware UTC datetime
    - **ensure_utc() / to_naive_utc():** Normalise datetimes coming back from storage
    - **to_iso8601() / from_iso8601():** Safe serialization round-trip

Tags:
    timestamps, object-id, utc, datetime, metis-core, stdlib-only
"""

import itertools
import os
import re
import threading
import time
from datetime import UTC, datetime

_OBJECT_ID_RE = re.compile(r"^[0-9a-f]{24}$")

# Process-wide random part and counter, drawn once per process.
_PROCESS_UNIQUE = os.urandom(5)
_COUNTER = itertools.count(int.from_bytes(os.urandom(3), "big"))
_COUNTER_LOCK = threading.Lock()


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def generate_object_id() -> str:
    """
    Generate a 12-byte object identifier.

    Layout: 4-byte big-endian seconds since epoch, 5 process-unique random
    bytes, 3-byte big-endian counter. Rendered as 24 lowercase hex chars,
    so identifiers created later sort after earlier ones (to the second).
    """
    with _COUNTER_LOCK:
        counter = next(_COUNTER) & 0xFFFFFF
    raw = (
        int(time.time()).to_bytes(4, "big")
        + _PROCESS_UNIQUE
        + counter.to_bytes(3, "big")
    )
    return raw.hex()


def is_object_id(value: str) -> bool:
    """Return True if *value* looks like a 24-hex-char object id."""
    return bool(value) and _OBJECT_ID_RE.match(value) is not None


def object_id_timestamp(value: str) -> datetime:
    """Extract the creation second encoded in an object id."""
    return datetime.fromtimestamp(int(value[:8], 16), UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (as returned by SQLite)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Convert to a naive UTC datetime for storage columns without tz support."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.replace(tzinfo=None)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to a UTC datetime."""
    if s is None:
        return None
    return ensure_utc(datetime.fromisoformat(s))
