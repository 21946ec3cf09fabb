"""
Cache key derivation for API requests.
"""
import hashlib
from typing import Optional


def hash_credential(value: str) -> str:
    """One-way fingerprint of a credential so raw secrets never end up in keys."""
    return hashlib.sha256(str(value).encode()).hexdigest()[:16]


def build_cache_key(
    path: str,
    query: str = "",
    credential: Optional[str] = None,
    language: Optional[str] = None,
) -> str:
    """
    Build the cache key for a request.

    The query string is used verbatim, so `?a=1&b=2` and `?b=2&a=1` are
    different keys. Distinct credentials get distinct keys; the same
    credential reuses the same entries. Locale variants are cached separately.

    Args:
        path: Request path (already normalized by the HTTP layer)
        query: Raw query string without the leading '?'
        credential: Value of the Authorization header, if any
        language: Value of the Accept-Language header, if any

    Returns:
        The cache key
    """
    parts = [f"{path}?{query}" if query else path]
    if credential:
        parts.append(f"auth={hash_credential(credential)}")
    if language:
        parts.append(f"lang={language}")
    return "|".join(parts)
