"""Shared validation and encoding helpers for file sharing.

Covers id/token generation, chunk key derivation, chunk digests, share
links, header encoding and the numeric checks applied to request input.
"""
import hashlib
import math
import secrets
from typing import Any, Optional
from urllib.parse import quote

from .errors import InvalidArgument

# URL-safe alphabet for ids and tokens.
URL_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"


def generate_id(length: int = 16) -> str:
    """Return a random URL-safe identifier of *length* characters."""
    return "".join(secrets.choice(URL_ALPHABET) for _ in range(length))


def generate_token(length: int = 32) -> str:
    """Return a random bearer token."""
    return generate_id(length)


def chunk_key(file_id: str, token: str, index: int) -> str:
    """Derive the chunk store key for chunk *index* of a session.

    The token is folded in as a digest so raw tokens never end up in
    cache keys or file names.
    """
    token_digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    return f"chunks/{file_id}/{token_digest}/{index}"


def chunk_digest(data: bytes) -> str:
    """SHA-256 hex digest of a chunk body."""
    return hashlib.sha256(data).hexdigest()


def share_link(base_url: str, file_id: str, token: str) -> str:
    """Build the public share link for a file."""
    return f"{base_url.rstrip('/')}/s/{file_id}/{token}"


def encode_rfc5987(value: str) -> str:
    """Percent-encode *value* for an RFC 5987 ``ext-value``.

    Examples:
        >>> encode_rfc5987("a b.txt")
        'a%20b.txt'
        >>> encode_rfc5987("résumé (1).pdf")
        'r%C3%A9sum%C3%A9%20%281%29.pdf'
    """
    return quote(value, safe="-_.~")


def content_disposition(filename: str, disposition: str = "inline") -> str:
    """Build a Content-Disposition header with an RFC 5987 filename."""
    return f"{disposition}; filename=\"file\"; filename*=UTF-8''{encode_rfc5987(filename)}"


# ---------------------------------------------------------------------------
# Numeric validation
# ---------------------------------------------------------------------------


def is_number(value: Any) -> bool:
    """True for finite ints and floats (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def is_integer(value: Any) -> bool:
    """True for ints and integral floats (bools excluded)."""
    if not is_number(value):
        return False
    return isinstance(value, int) or float(value).is_integer()


def require_positive_int(value: Any, field: str) -> int:
    if not is_integer(value) or value <= 0:
        raise InvalidArgument(f"{field} must be a positive integer")
    return int(value)


def require_non_negative_int(value: Any, field: str) -> int:
    if not is_integer(value) or value < 0:
        raise InvalidArgument(f"{field} must be a non-negative integer")
    return int(value)


def parse_int_param(raw: Optional[str]) -> Optional[int]:
    """Parse a query-string integer, returning None when it is not one."""
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None
