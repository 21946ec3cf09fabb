"""
Shared fixtures: a fake upstream standing in for requests.Session, and a
controllable clock for expiry tests.
"""
import asyncio
import json
import threading
import time
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient
from requests.structures import CaseInsensitiveDict

from app.cache import CacheStore
from app.main import create_app
from app.proxy import ProxyService
from app.upstream import UpstreamForwarder
from config.settings import Settings


API_BASE_URL = "https://api.example.test"
MEDIA_BASE_URL = "https://media.example.test"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRaw:
    def __init__(self, chunks: List[bytes], fail_after: Optional[int] = None):
        self._chunks = chunks
        self._fail_after = fail_after

    def stream(self, amt, decode_content=False):
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i >= self._fail_after:
                raise ConnectionResetError("upstream reset")
            yield chunk


class FakeResponse:
    """The subset of requests.Response the forwarder touches."""

    def __init__(
        self,
        status_code: int = 200,
        body: Union[bytes, dict, list] = b"",
        headers: Optional[Dict[str, str]] = None,
        chunks: Optional[List[bytes]] = None,
        fail_after: Optional[int] = None,
    ):
        headers = dict(headers or {})
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
            headers.setdefault("Content-Type", "application/json;charset=utf-8")
        self.status_code = status_code
        self.content = body
        self.headers = CaseInsensitiveDict(headers)
        self.raw = FakeRaw(chunks if chunks is not None else [body], fail_after=fail_after)
        self.closed = False

    def json(self):
        return json.loads(self.content)

    def close(self):
        self.closed = True


Route = Union[FakeResponse, Exception, Callable[..., FakeResponse]]


class FakeUpstream:
    """
    Stands in for requests.Session.

    Answers from a route table keyed by path (with query, if given), records
    every call, and can hold calls until `release()` to force overlap.
    """

    def __init__(self):
        self.headers = CaseInsensitiveDict({"User-Agent": "python-requests"})
        self.routes: Dict[str, Route] = {}
        self.calls: List[dict] = []
        self.closed_sessions = 0
        self.responses: List[FakeResponse] = []
        self._lock = threading.Lock()
        self._gate: Optional[threading.Event] = None

    def route(self, path: str, response: Route) -> None:
        self.routes[path] = response

    def hold(self) -> None:
        self._gate = threading.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def request(self, method, url, headers=None, data=None, timeout=None, stream=False, allow_redirects=True):
        parts = urlsplit(url)
        with self._lock:
            self.calls.append({
                "method": method,
                "url": url,
                "headers": dict(headers or {}),
                "data": data,
                "stream": stream,
            })
        if self._gate is not None:
            self._gate.wait(timeout=5)

        full = f"{parts.path}?{parts.query}" if parts.query else parts.path
        route = self.routes.get(full, self.routes.get(parts.path))
        if route is None:
            response = FakeResponse(404, {"status_code": 34, "status_message": "Not found"})
        elif isinstance(route, Exception):
            raise route
        elif callable(route):
            response = route(method=method, url=url, headers=headers, data=data)
        else:
            response = route
        self.responses.append(response)
        return response

    def close(self):
        with self._lock:
            self.closed_sessions += 1


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """wait_for for coroutines: polls without blocking the event loop."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = {
            "api_base_url": API_BASE_URL,
            "media_base_url": MEDIA_BASE_URL,
            "cache_ttl_seconds": 600,
            "max_cache_entries": 1000,
            "max_cache_body_bytes": 1024 * 1024,
        }
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def make_service(upstream, clock, make_settings):
    """Build a ProxyService wired to the fake upstream and fake clock."""
    def _make(**overrides) -> ProxyService:
        settings = make_settings(**overrides)
        store = CacheStore(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.max_cache_entries,
            max_body_bytes=settings.max_cache_body_bytes,
            clock=clock,
        )
        forwarder = UpstreamForwarder(session_factory=lambda: upstream)
        return ProxyService(settings, store=store, forwarder=forwarder)
    return _make


@pytest.fixture
def make_client(make_service):
    def _make(**overrides) -> TestClient:
        service = make_service(**overrides)
        return TestClient(create_app(service.settings, service=service))
    return _make
