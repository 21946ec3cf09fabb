"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class CacheDisposition(Enum):
    """What happened to an upstream response with respect to the cache."""
    STORED = "stored"            # Inserted into the store
    SKIPPED_SIZE = "skip_size"   # Body larger than the cacheable ceiling
    SKIPPED_STATUS = "skip_status"  # Upstream answered something other than 200
    BYPASS = "bypass"            # Request was never cache-eligible


class RequestKind(Enum):
    """Classification of an inbound request."""
    PREFLIGHT = "preflight"
    HEALTH = "health"
    MEDIA = "media"
    API_CACHEABLE = "api-cacheable"
    API_BYPASS = "api-bypass"


@dataclass
class CacheEntry:
    """
    A stored upstream response.

    Only 200 responses are ever stored, so the status is implied. `headers`
    are the already-filtered response headers needed to re-serve `body`
    verbatim.
    """
    key: str
    body: bytes
    expires_at: float
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.body)

    def is_expired(self, now: float) -> bool:
        """An entry is dead once `now` has passed its expiry."""
        return now > self.expires_at


@dataclass(frozen=True)
class FetchResult:
    """
    Outcome of one upstream API call.

    Shared by value between every caller of a coalesced fetch, so it is
    frozen once built.
    """
    status: int
    headers: Dict[str, str]
    body: bytes
    duration_ms: int
    disposition: CacheDisposition
    data: Any = None
    content_type: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
