"""
Response caching with TTL expiry, bounded capacity and request coalescing.
"""
from .core import CacheDisposition, CacheEntry, FetchResult, RequestKind
from .keys import build_cache_key, hash_credential
from .store import CacheStore
from .coalescer import RequestCoalescer

__all__ = [
    # Core types
    "CacheDisposition",
    "CacheEntry",
    "FetchResult",
    "RequestKind",
    # Keys
    "build_cache_key",
    "hash_credential",
    # Store
    "CacheStore",
    # Coalescing
    "RequestCoalescer",
]
