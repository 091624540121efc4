"""Cache key derivation.

A key is the MD5 of the trimmed, lowercased identifier (usually an email
address), rendered as 32 lowercase hex characters. This is the hash the
upstream avatar service itself uses, so keys can be passed through unchanged.
"""

from __future__ import annotations

import hashlib
import re

from gravproxy.errors import ConfigurationError

KEY_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def compute_key(identifier: str) -> str:
    """Return the cache key for an identifier: ``' A@B.com '`` → md5 of ``'a@b.com'``."""
    normalized = identifier.strip().lower()
    return hashlib.md5(normalized.encode("utf-8"), usedforsecurity=False).hexdigest()


def is_valid_key(value: str) -> bool:
    return KEY_PATTERN.fullmatch(value) is not None


def ensure_digest_available() -> None:
    """Fail fast if this interpreter cannot compute keys.

    Some OpenSSL builds (FIPS mode) refuse MD5 entirely. Without it no request
    can ever be served, so this is a startup error, not a per-request one.
    """
    try:
        key = compute_key("")
    except ValueError as exc:
        raise ConfigurationError("MD5 digest is not available in this environment") from exc
    if not is_valid_key(key):
        raise ConfigurationError(f"MD5 digest produced an unexpected key: {key!r}")
