"""
Upstream HTTP client for the proxy.
Forwards requests to the API and media origins with a fixed header policy.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple

import requests

from app.cache.core import CacheDisposition, FetchResult

logger = logging.getLogger("upstream")

DEFAULT_USER_AGENT = "media-api-proxy/1.0"
STREAM_CHUNK_BYTES = 64 * 1024

# Meaningful for a single connection only, never forwarded across the proxy
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Request headers forwarded upstream unless forward-all mode is on
ALLOWED_UPSTREAM_HEADERS = frozenset({
    "accept",
    "accept-encoding",
    "accept-language",
    "authorization",
    "cache-control",
    "content-length",
    "content-type",
    "if-modified-since",
    "if-none-match",
    "if-range",
    "pragma",
    "range",
    "user-agent",
})


class UpstreamError(Exception):
    """Transport-level failure talking to an upstream (DNS, TLS, connect, reset, timeout)."""


def _header_items(headers: Any) -> Iterable[Tuple[str, str]]:
    # Starlette's Headers.items() keeps repeated headers as separate pairs
    if hasattr(headers, "multi_items"):
        return headers.multi_items()
    return headers.items()


def build_upstream_headers(
    headers: Any,
    target_host: str,
    forward_all: bool = False,
    kind: str = "api",
) -> Dict[str, str]:
    """
    Build the outbound header set for an inbound request.

    Args:
        headers: Inbound request headers (mapping or Starlette Headers)
        target_host: Host header value for the upstream
        forward_all: Forward every non hop-by-hop header instead of the allowlist
        kind: "api" or "media"; API calls default to Accept: application/json

    Returns:
        Lower-cased header dict
    """
    outbound: Dict[str, str] = {}
    for name, value in _header_items(headers):
        lower = name.lower()
        if lower in HOP_BY_HOP_HEADERS or lower == "host":
            continue
        if not forward_all and lower not in ALLOWED_UPSTREAM_HEADERS:
            continue
        if value is None:
            continue
        outbound[lower] = f"{outbound[lower]}, {value}" if lower in outbound else value

    outbound["host"] = target_host
    outbound.setdefault("user-agent", DEFAULT_USER_AGENT)
    if kind == "api":
        outbound.setdefault("accept", "application/json")
    return outbound


def filter_response_headers(
    headers: Mapping[str, str],
    include_length_and_encoding: bool = False,
) -> Dict[str, str]:
    """
    Select upstream response headers to relay to the client.

    Content-Length and Content-Encoding only describe the bytes on the wire;
    they are kept for byte-for-byte relays (media, HEAD) and dropped when the
    body was decoded and will be re-framed by the proxy.
    """
    relayed: Dict[str, str] = {}
    for name, value in headers.items():
        if value is None:
            continue
        lower = name.lower()
        if lower in HOP_BY_HOP_HEADERS or lower.startswith("access-control-"):
            continue
        if not include_length_and_encoding and lower in ("content-length", "content-encoding"):
            continue
        relayed[lower] = value
    return relayed


def extract_error_details(data: Any, body: bytes) -> Tuple[Optional[int], Optional[str]]:
    """Pull an application error code/message out of an upstream error body."""
    if isinstance(data, dict):
        code = data.get("status_code", data.get("code"))
        message = data.get("status_message", data.get("message", data.get("error")))
        return (
            code if isinstance(code, int) and not isinstance(code, bool) else None,
            message if isinstance(message, str) else None,
        )
    if body:
        return None, body[:200].decode("utf-8", errors="replace")
    return None, None


def _decode_json(response) -> Any:
    content_type = response.headers.get("content-type") or ""
    if "json" not in content_type.lower():
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _describe_transport_error(error: requests.RequestException) -> str:
    # The exception text can embed the full URL, credentials included
    if isinstance(error, requests.Timeout):
        return "upstream timed out"
    if isinstance(error, requests.exceptions.SSLError):
        return "upstream TLS handshake failed"
    if isinstance(error, requests.ConnectionError):
        return "upstream connection failed"
    return f"upstream request failed ({type(error).__name__})"


class UpstreamStream:
    """
    A streamed upstream response.

    Iterating yields the raw bytes as received (still content-encoded), so the
    relayed Content-Length and Content-Encoding stay valid. The iterator is
    finite and not restartable; closing it closes the upstream connection.
    """

    def __init__(
        self,
        response,
        on_close: Optional[Callable[[], None]] = None,
        chunk_size: int = STREAM_CHUNK_BYTES,
    ):
        self._response = response
        self._on_close = on_close
        self._chunk_size = chunk_size
        self._closed = False
        self.status = response.status_code
        self.headers = filter_response_headers(response.headers, include_length_and_encoding=True)

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.raw.stream(self._chunk_size, decode_content=False):
                if chunk:
                    yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        if self._on_close is not None:
            self._on_close()


class UpstreamForwarder:
    """
    Issues outbound requests with `requests`.

    With keep_alive on, one pooled Session is shared by all calls; otherwise
    each call gets its own Session, closed when the call (or stream) ends.

    Usage:
        forwarder = UpstreamForwarder(timeout=30.0, keep_alive=True)
        result = forwarder.fetch("GET", "https://api.example.org/3/movie/550", headers)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        keep_alive: bool = False,
        session_factory: Callable[[], Any] = requests.Session,
    ):
        self._timeout = timeout
        self._session_factory = session_factory
        self._shared_session = self._new_session() if keep_alive else None

    def _new_session(self):
        session = self._session_factory()
        # Only the headers built by build_upstream_headers go upstream
        session.headers.clear()
        return session

    def _acquire(self) -> Tuple[Any, bool]:
        if self._shared_session is not None:
            return self._shared_session, False
        return self._new_session(), True

    def fetch(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[bytes] = None,
    ) -> FetchResult:
        """
        Perform a buffered upstream call.

        Any status code is a valid result; only transport failures raise.

        Raises:
            UpstreamError: DNS, TLS, connect, reset or timeout failures
        """
        session, owned = self._acquire()
        started = time.monotonic()
        try:
            response = session.request(
                method,
                url,
                headers=headers,
                data=body or None,
                timeout=self._timeout,
            )
            content = response.content
        except requests.RequestException as e:
            detail = _describe_transport_error(e)
            logger.error(f"Upstream {method} to {headers.get('host')} failed: {detail}")
            raise UpstreamError(detail) from e
        finally:
            if owned:
                session.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        response_headers = {k.lower(): v for k, v in response.headers.items()}
        data = _decode_json(response)

        error_code = error_message = None
        if response.status_code >= 400:
            error_code, error_message = extract_error_details(data, content)
            logger.warning(
                f"Upstream returned {response.status_code} "
                f"(code={error_code}, message={error_message!r})"
            )

        return FetchResult(
            status=response.status_code,
            headers=response_headers,
            body=content,
            duration_ms=duration_ms,
            disposition=CacheDisposition.BYPASS,
            data=data,
            content_type=response_headers.get("content-type"),
            error_code=error_code,
            error_message=error_message,
        )

    def open_stream(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[bytes] = None,
    ) -> UpstreamStream:
        """
        Open a streamed upstream call; returns once the response headers arrive.

        Raises:
            UpstreamError: If the connection fails before a status is received
        """
        session, owned = self._acquire()
        try:
            response = session.request(
                method,
                url,
                headers=headers,
                data=body or None,
                timeout=self._timeout,
                stream=True,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            if owned:
                session.close()
            detail = _describe_transport_error(e)
            logger.error(f"Upstream stream {method} to {headers.get('host')} failed: {detail}")
            raise UpstreamError(detail) from e

        return UpstreamStream(response, on_close=session.close if owned else None)

    def close(self) -> None:
        if self._shared_session is not None:
            self._shared_session.close()
