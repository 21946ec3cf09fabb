"""
Media API Proxy - Main FastAPI Application
Caching reverse proxy in front of a REST API and its media origin
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from app.access_log import RequestContext, get_request_id
from app.proxy import BODYLESS_METHODS, InboundRequest, ProxyService
from config.settings import Settings, settings

APP_VERSION = "v1.0.0"
APP_NAME = "Media API Proxy"

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger("main")


def _raw_path(request: Request) -> str:
    """Path as sent by the client, percent-encoding intact."""
    raw = request.scope.get("raw_path")
    if raw:
        return raw.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


def create_app(
    app_settings: Optional[Settings] = None,
    service: Optional[ProxyService] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        app_settings: Settings to use (default: the environment-loaded settings)
        service: Pre-built ProxyService, e.g. with a fake forwarder in tests
    """
    app_settings = app_settings or settings
    if service is None:
        service = ProxyService(app_settings)
    service.log_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.store.start_sweeper()
        try:
            yield
        finally:
            service.store.stop_sweeper()
            service.forwarder.close()

    app = FastAPI(
        title=APP_NAME,
        description="Caching reverse proxy with request coalescing",
        version=APP_VERSION,
        lifespan=lifespan,
        # Every path belongs to the upstream
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.proxy = service

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request):
        """Every method on every path goes through the proxy service."""
        ctx = RequestContext(request_id=get_request_id(request.headers), method=request.method)
        body = None
        if request.method not in BODYLESS_METHODS:
            body = await request.body()
        inbound = InboundRequest(
            method=request.method,
            path=_raw_path(request),
            query=request.url.query,
            headers=request.headers,
            body=body,
        )
        return await service.handle(inbound, ctx)

    return app


app = create_app()


def run() -> None:
    """Serve the proxy with uvicorn on the configured host and port."""
    logger.info(f"{APP_NAME} listening on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
