"""
Proxy Application Factory
=========================

Builds the ASGI application served on the local proxy port.

A package manager configured with an HTTP proxy sends absolute-form
request targets (``GET http://deb.beckhoff.com/dists/... HTTP/1.1``).
AbsoluteFormMiddleware records the URL host and reduces the target to
origin form so the catch-all route can match it.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import urlsplit

import httpx
from fastapi import FastAPI
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import Settings, get_settings
from .auth import BasicCredential
from .routes import URL_HOST_SCOPE_KEY, ProxyState, proxy_error_response, proxy_router

logger = logging.getLogger(__name__)


class AbsoluteFormMiddleware:
    """Normalise absolute-form request targets to origin form."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and not scope["path"].startswith("/"):
            try:
                scope = normalize_absolute_form(scope)
            except ValueError as e:
                logger.error(f"Malformed request target {scope['path']!r}: {e}")
                await proxy_error_response()(scope, receive, send)
                return
        await self.app(scope, receive, send)


def normalize_absolute_form(scope: Scope) -> Scope:
    """
    Rewrite an absolute-form scope to origin form.

    Args:
        scope: ASGI HTTP scope whose path is a full URL

    Returns:
        A new scope with origin-form path/raw_path and the URL host stored
        under URL_HOST_SCOPE_KEY, or the scope unchanged if the target is
        not an absolute URL

    Raises:
        ValueError: If the target URL is malformed (e.g. an unclosed IPv6 bracket)
    """
    parts = urlsplit(scope["path"])
    if not parts.scheme or not parts.netloc:
        return scope

    raw_target = scope.get("raw_path") or scope["path"].encode("latin-1")
    raw_parts = urlsplit(raw_target.decode("latin-1"))

    scope = dict(scope)
    scope["path"] = parts.path or "/"
    scope["raw_path"] = (raw_parts.path or "/").encode("latin-1")
    scope[URL_HOST_SCOPE_KEY] = parts.hostname
    return scope


def create_upstream_client(
    settings: Settings,
    transport: Optional[Any] = None,
) -> httpx.AsyncClient:
    """
    Create the HTTP client used for upstream requests.

    httpx's default Accept/Accept-Encoding headers are removed so the
    package manager's own content negotiation reaches the repository as sent.
    The default Connection header is dropped as well, so the upstream
    request carries none.

    Args:
        settings: Application settings (timeouts)
        transport: Optional httpx transport, used by tests to stub the upstream

    Returns:
        Configured httpx.AsyncClient
    """
    timeout = httpx.Timeout(
        settings.UPSTREAM_TIMEOUT_SECONDS,
        connect=settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
    )
    client = httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=False,
        transport=transport,
    )
    for name in ("Accept", "Accept-Encoding", "Connection"):
        client.headers.pop(name, None)
    return client


def create_proxy_app(
    credential: BasicCredential,
    settings: Optional[Settings] = None,
    transport: Optional[Any] = None,
) -> FastAPI:
    """
    Application factory for the proxy listener.

    Creates the FastAPI application with:
        - Lifespan-owned upstream client
        - Absolute-form target normalisation
        - Catch-all forwarding route

    Interactive docs and the OpenAPI schema are disabled so that every
    path, ``/docs`` included, is forwarded.

    Args:
        credential: Pre-encoded repository credential
        settings: Application settings (defaults to get_settings())
        transport: Optional httpx transport for the upstream client

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = create_upstream_client(settings, transport)
        app.state.proxy_state = ProxyState(credential=credential, client=client)
        logger.info("APT proxy upstream client initialized")

        try:
            yield
        finally:
            app.state.proxy_state = None
            await client.aclose()
            logger.info("APT proxy upstream client closed")

    app = FastAPI(
        title="APT Proxy",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.proxy_state = None

    app.add_middleware(AbsoluteFormMiddleware)
    app.include_router(proxy_router)

    return app
