"""
Request routing for the caching proxy.

Every inbound request is classified once and handled by the first matching
branch: preflight, health, media stream, uncached API call, or cached API
call (optionally coalesced with identical in-flight misses).
"""
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Dict, Optional, Tuple
from urllib.parse import urlsplit

from fastapi import Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool
from starlette.datastructures import Headers
from starlette.types import Receive, Scope, Send

from app.access_log import REQUEST_ID_HEADER, AccessLogger, RequestContext
from app.cache import (
    CacheDisposition,
    CacheStore,
    FetchResult,
    RequestCoalescer,
    RequestKind,
    build_cache_key,
)
from app.sanitize import BadRequestError, path_for_log, sanitize_query
from app.upstream import (
    UpstreamError,
    UpstreamForwarder,
    UpstreamStream,
    build_upstream_headers,
    filter_response_headers,
)
from config.settings import Settings

logger = logging.getLogger("proxy")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

BODYLESS_METHODS = ("GET", "HEAD")


@dataclass
class InboundRequest:
    """The parts of a client request the proxy looks at."""
    method: str
    path: str
    query: str = ""
    headers: Any = field(default_factory=dict)
    body: Optional[bytes] = None

    def __post_init__(self):
        self.method = self.method.upper()
        if not isinstance(self.headers, Headers):
            # Starlette Headers lower-cases names, so lookups ignore casing
            self.headers = Headers(headers=dict(self.headers))


class RelayResponse(StreamingResponse):
    """
    Streams an upstream media response to the client.

    The upstream connection is closed and the access line written when the
    ASGI call ends, including when the client disconnects before the first
    chunk is pulled and the body iterator never starts.
    """

    def __init__(self, stream: UpstreamStream, ctx: RequestContext, access_log: AccessLogger):
        self.stream = stream
        self.ctx = ctx
        self.completed = False
        self._access_log = access_log
        super().__init__(self._relay(), status_code=stream.status, headers=stream.headers)

    async def _relay(self):
        try:
            async for chunk in iterate_in_threadpool(self.stream):
                yield chunk
        except Exception as e:
            self.ctx.error = str(e) or type(e).__name__
            logger.error(f"Media stream from {self.ctx.upstream_host} ended early: {self.ctx.error}")
            raise
        self.completed = True

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.finish()

    def finish(self) -> None:
        """Release the upstream stream and write the access line, once."""
        self.stream.close()
        self.ctx.aborted = not self.completed
        event = "request.end" if self.completed else "request.aborted"
        self._access_log.emit(self.ctx, self.stream.status, event)


def _split_origin(base_url: str) -> Tuple[str, str]:
    """Return (scheme://netloc, host header value) for an upstream base URL."""
    parts = urlsplit(base_url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Invalid upstream base URL: {base_url!r}")
    host = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
    return f"{parts.scheme}://{parts.netloc.rpartition('@')[2]}", host


class ProxyService:
    """
    Owns the cache store, the coalescer and the forwarder for one app.

    handle() is a coroutine and never raises; every failure becomes an
    error response.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[CacheStore] = None,
        coalescer: Optional[RequestCoalescer] = None,
        forwarder: Optional[UpstreamForwarder] = None,
        access_log: Optional[AccessLogger] = None,
    ):
        self.settings = settings
        if store is None:
            store = CacheStore(
                ttl_seconds=settings.cache_ttl_seconds,
                max_entries=settings.max_cache_entries,
                max_body_bytes=settings.max_cache_body_bytes,
            )
        if coalescer is None:
            coalescer = RequestCoalescer(timeout=settings.coalesce_timeout_seconds)
        if forwarder is None:
            forwarder = UpstreamForwarder(
                timeout=settings.upstream_timeout_seconds,
                keep_alive=settings.upstream_keep_alive,
            )
        if access_log is None:
            access_log = AccessLogger(sample_rate=settings.access_log_sample_rate)

        self.store = store
        self.coalescer = coalescer
        self.forwarder = forwarder
        self.access_log = access_log

        self._api_origin, self._api_host = _split_origin(settings.api_base_url)
        self._media_origin, self._media_host = _split_origin(settings.media_base_url)

    def describe(self) -> Dict[str, Any]:
        """Effective configuration, safe to log."""
        return {
            "api_origin": self._api_origin,
            "media_origin": self._media_origin,
            "media_path_prefix": self.settings.media_path_prefix,
            "upstream_forward_all_headers": self.settings.upstream_forward_all_headers,
            "upstream_keep_alive": self.settings.upstream_keep_alive,
            "cache_miss_singleflight": self.settings.cache_miss_singleflight,
            "cache_ttl_seconds": self.store.ttl_seconds,
            "max_cache_entries": self.store.max_entries,
            "max_cache_body_bytes": self.store.max_body_bytes,
            "access_log_sample_rate": self.access_log.sample_rate,
        }

    def log_config(self) -> None:
        logger.info(json.dumps({"event": "config", **self.describe()}))

    def classify(self, method: str, path: str) -> RequestKind:
        """Pick the handling branch for a request; first match wins."""
        if method == "OPTIONS":
            return RequestKind.PREFLIGHT
        if path == "/":
            return RequestKind.HEALTH
        if path.startswith(self.settings.media_path_prefix):
            return RequestKind.MEDIA
        if method != "GET":
            return RequestKind.API_BYPASS
        return RequestKind.API_CACHEABLE

    async def handle(self, request: InboundRequest, ctx: RequestContext) -> Response:
        """
        Serve one request.

        Runs on the event loop; blocking upstream calls go to the thread
        pool. Buffered responses are access-logged here; streamed responses
        are logged when the stream finishes or is abandoned.
        """
        try:
            response = await self._dispatch(request, ctx)
        except BadRequestError as e:
            ctx.error = str(e)
            logger.warning(f"Bad request {request.method} {ctx.path}: {e}")
            response = JSONResponse({"error": "Bad Request"}, status_code=400)
        except UpstreamError as e:
            ctx.error = str(e)
            response = JSONResponse({"error": "Bad Gateway", "details": str(e)}, status_code=502)
        except TimeoutError:
            ctx.error = "coalesced request timed out"
            response = JSONResponse({"error": "Gateway Timeout"}, status_code=504)
        except Exception as e:
            ctx.error = str(e) or type(e).__name__
            logger.exception(f"Proxy error for {request.method} {ctx.path}")
            response = JSONResponse({"error": "Internal Server Error"}, status_code=500)

        response.headers.update(CORS_HEADERS)
        response.headers[REQUEST_ID_HEADER] = ctx.request_id
        if not isinstance(response, StreamingResponse):
            self.access_log.emit(ctx, response.status_code)
        return response

    async def _dispatch(self, request: InboundRequest, ctx: RequestContext) -> Response:
        param = self.settings.credential_query_param
        ctx.path = request.path
        ctx.has_auth = "authorization" in request.headers

        query, ctx.credential_sanitized = sanitize_query(request.query, param)
        ctx.path = path_for_log(request.path, query, param)

        kind = self.classify(request.method, request.path)
        ctx.kind = kind.value

        if kind is RequestKind.PREFLIGHT:
            return Response(status_code=200)
        if kind is RequestKind.HEALTH:
            return JSONResponse({"name": self.settings.service_name, "status": "ok"})

        target = f"{request.path}?{query}" if query else request.path
        if kind is RequestKind.MEDIA:
            return await self._proxy_media(request, target, ctx)
        return await self._proxy_api(request, query, target, ctx, cacheable=kind is RequestKind.API_CACHEABLE)

    # ===== MEDIA =====

    async def _proxy_media(self, request: InboundRequest, target: str, ctx: RequestContext) -> Response:
        ctx.upstream_host = self._media_host
        headers = build_upstream_headers(
            request.headers,
            self._media_host,
            forward_all=self.settings.upstream_forward_all_headers,
            kind="media",
        )
        body = request.body if request.method not in BODYLESS_METHODS else None
        stream = await run_in_threadpool(
            self.forwarder.open_stream, request.method, f"{self._media_origin}{target}", headers, body
        )
        ctx.upstream_status = stream.status
        return RelayResponse(stream, ctx, self.access_log)

    # ===== API =====

    async def _proxy_api(
        self,
        request: InboundRequest,
        query: str,
        target: str,
        ctx: RequestContext,
        cacheable: bool,
    ) -> Response:
        ctx.upstream_host = self._api_host
        url = f"{self._api_origin}{target}"
        headers = build_upstream_headers(
            request.headers,
            self._api_host,
            forward_all=self.settings.upstream_forward_all_headers,
            kind="api",
        )

        if not cacheable:
            ctx.cache = CacheDisposition.BYPASS.value
            body = request.body if request.method not in BODYLESS_METHODS else None
            result = await run_in_threadpool(self.forwarder.fetch, request.method, url, headers, body)
            self._record_upstream(ctx, result)
            return self._build_response(request.method, result)

        cache_key = build_cache_key(
            request.path,
            query,
            credential=request.headers.get("authorization"),
            language=request.headers.get("accept-language"),
        )
        entry = self.store.get(cache_key)
        if entry is not None:
            ctx.cache = "hit"
            logger.info(f"Cache hit: {ctx.path}")
            return Response(content=entry.body, status_code=200, headers=entry.headers)

        ctx.cache = "miss"
        log_path = ctx.path

        def fetch() -> Awaitable[FetchResult]:
            return self._fetch_and_store(cache_key, url, headers, log_path)

        joined = False
        if self.settings.cache_miss_singleflight:
            wait_started = time.monotonic()
            # The key can embed a credential, so logs get the redacted path
            result, joined = await self.coalescer.get_or_fetch(cache_key, fetch, label=log_path)
            ctx.singleflight = "joined" if joined else "leader"
            if joined:
                ctx.singleflight_wait_ms = int((time.monotonic() - wait_started) * 1000)
        else:
            result = await fetch()

        if joined and result.disposition is CacheDisposition.STORED:
            ctx.cache = "singleflight"
        else:
            ctx.cache = result.disposition.value
        self._record_upstream(ctx, result)
        return self._build_response(request.method, result)

    async def _fetch_and_store(self, cache_key: str, url: str, headers: Dict[str, str], log_path: str) -> FetchResult:
        """Fetch a cache-eligible GET and store it if it is a small enough 200."""
        result = await run_in_threadpool(self.forwarder.fetch, "GET", url, headers)

        if result.status != 200:
            disposition = CacheDisposition.SKIPPED_STATUS
        elif self.store.put(cache_key, result.body, filter_response_headers(result.headers)):
            disposition = CacheDisposition.STORED
            logger.info(f"Cache miss and stored: {log_path}")
        else:
            disposition = CacheDisposition.SKIPPED_SIZE

        return replace(result, disposition=disposition)

    @staticmethod
    def _record_upstream(ctx: RequestContext, result: FetchResult) -> None:
        ctx.upstream_status = result.status
        ctx.upstream_duration_ms = result.duration_ms
        ctx.upstream_content_type = result.content_type
        ctx.upstream_error_code = result.error_code
        ctx.upstream_error_message = result.error_message

    @staticmethod
    def _build_response(method: str, result: FetchResult) -> Response:
        if method == "HEAD":
            return Response(
                status_code=result.status,
                headers=filter_response_headers(result.headers, include_length_and_encoding=True),
            )
        return Response(
            content=result.body,
            status_code=result.status,
            headers=filter_response_headers(result.headers),
        )
