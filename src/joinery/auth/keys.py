"""API key generation, hashing and scope encoding utilities."""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Iterable

KEY_PREFIX = "jsk_"
# secrets.token_urlsafe(32) yields 43 characters
KEY_RANDOM_LENGTH = 43
DISPLAY_PREFIX_LENGTH = 12
DEFAULT_SCOPES = ("read",)


def generate_api_key() -> tuple[str, str, str]:
    """Generate API key, return (full_key, key_hash, key_prefix).

    Full key is shown only once at creation time.
    Only hash and prefix are stored in DB.

    Returns:
        Tuple of (full_key, key_hash, key_prefix).
    """
    full_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return full_key, hash_api_key(full_key), full_key[:DISPLAY_PREFIX_LENGTH]


def hash_api_key(key: str) -> str:
    """Hash an API key for lookup.

    Args:
        key: The full API key string.

    Returns:
        SHA-256 hex digest of the key.
    """
    return hashlib.sha256(key.encode()).hexdigest()


def is_well_formed(key: str) -> bool:
    """Cheap format check done before any store lookup."""
    return key.startswith(KEY_PREFIX) and len(key) >= len(KEY_PREFIX) + KEY_RANDOM_LENGTH


def parse_scopes(raw: str | None) -> frozenset[str]:
    """Split a comma-delimited scope column into a set, dropping blanks."""
    if not raw:
        return frozenset()
    return frozenset(s.strip() for s in raw.split(",") if s.strip())


def format_scopes(scopes: Iterable[str]) -> str:
    """Inverse of :func:`parse_scopes`; output is sorted for stable storage."""
    return ",".join(sorted({s.strip() for s in scopes if s.strip()}))
