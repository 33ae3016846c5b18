"""
Utility functions for the proof registry.

Provides hashing, encoding, identifier and time utilities shared by the
issuance, snapshot, verification and audit paths.
"""

import base64
import hashlib
import re
import time
from datetime import datetime, timezone
from typing import BinaryIO, Optional, Union

from ulid import ULID

HEX64_RE = re.compile(r"^[0-9a-f]{64}$")
ULID_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")

STREAM_CHUNK_SIZE = 64 * 1024


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def hash_stream(stream: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> str:
    """
    Hash a binary stream without loading it into memory.

    Args:
        stream: File-like object opened in binary mode
        chunk_size: Read size per iteration

    Returns:
        Lowercase hex SHA-256 of the stream contents
    """
    h = hashlib.sha256()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes (strict alphabet)."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_iso_ms(dt: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and Z suffix."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    """Current time as ISO-8601 UTC string, e.g. 2026-01-14T09:30:00.123Z."""
    return format_iso_ms(utc_now())


def parse_iso(s: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the Z suffix and explicit offsets. Naive values are taken as UTC.
    """
    if not isinstance(s, str) or not s:
        raise ValueError("timestamp must be a non-empty string")
    value = s[:-1] + '+00:00' if s.endswith('Z') else s
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_proof_id() -> str:
    """Generate a 26-character lexicographically sortable ULID."""
    return str(ULID())


def is_valid_hash(value: Optional[str]) -> bool:
    """True for exactly 64 lowercase hex characters."""
    return isinstance(value, str) and HEX64_RE.match(value) is not None


def is_valid_proof_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and ULID_RE.match(value) is not None
