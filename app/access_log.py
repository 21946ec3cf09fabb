"""Per-request context and the structured access log.

One JSON line per request, written when the response completes or the
client goes away. Successful lines are sampled by ACCESS_LOG_SAMPLE_RATE;
errors, aborts and upstream failures are always written.
"""

import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("access")

REQUEST_ID_HEADER = "X-Request-Id"


@dataclass
class RequestContext:
    """Everything recorded about one request while it is processed."""
    request_id: str
    method: str
    path: str = ""
    kind: Optional[str] = None
    cache: Optional[str] = None
    singleflight: Optional[str] = None
    singleflight_wait_ms: Optional[int] = None
    upstream_host: Optional[str] = None
    upstream_status: Optional[int] = None
    upstream_duration_ms: Optional[int] = None
    upstream_content_type: Optional[str] = None
    upstream_error_code: Optional[int] = None
    upstream_error_message: Optional[str] = None
    has_auth: bool = False
    credential_sanitized: bool = False
    error: Optional[str] = None
    aborted: bool = False
    started_at: float = field(default_factory=time.monotonic)
    logged: bool = False


def get_request_id(headers) -> str:
    """Reuse the caller's X-Request-Id when present, otherwise mint one."""
    incoming = headers.get(REQUEST_ID_HEADER)
    if incoming and incoming.strip():
        return incoming.strip()
    return str(uuid.uuid4())


class AccessLogger:
    """Writes at most one access line per RequestContext."""

    def __init__(self, sample_rate: float = 1.0, rng: Callable[[], float] = random.random):
        self.sample_rate = sample_rate
        self._rng = rng

    def _should_log(self, ctx: RequestContext, status: int) -> bool:
        if ctx.error or ctx.aborted or status >= 400:
            return True
        if ctx.upstream_status is not None and ctx.upstream_status >= 400:
            return True
        return self._rng() < self.sample_rate

    def emit(self, ctx: RequestContext, status: int, event: str = "request.end") -> Optional[Dict[str, Any]]:
        """
        Write the access line for a finished request.

        Returns:
            The logged payload, or None if already emitted or sampled out
        """
        if ctx.logged:
            return None
        ctx.logged = True
        if not self._should_log(ctx, status):
            return None

        fields = {
            k: v for k, v in asdict(ctx).items()
            if v is not None and k not in ("started_at", "logged")
        }
        payload = {
            "time": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": "info",
            "event": event,
            **fields,
            "status": status,
            "duration_ms": int((time.monotonic() - ctx.started_at) * 1000),
        }
        logger.info(json.dumps(payload))
        return payload
