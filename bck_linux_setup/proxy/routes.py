"""
Proxy Routes - APT Request Forwarding
=====================================

This module implements the forwarding endpoint that relays package manager
requests from the device (arriving through the reverse SSH tunnel) to the
real repository over HTTPS.

Request Transform:
------------------
1. Resolve the target host (Host header wins when the URL names the proxy itself)
2. Upgrade the scheme to https
3. Drop Proxy-*, Host and Connection headers
4. Set Host to the target host
5. Inject Basic auth, only for hosts under the trusted repository domain
6. Stream the request body upstream unchanged

Response Transform:
-------------------
- Copy all headers except Connection, then force ``Connection: close``
- Stream the body back unchanged, status code preserved
- Any failure before the response starts becomes ``502 Proxy Error``
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from .auth import BasicCredential, is_trusted_host, normalize_host

logger = logging.getLogger(__name__)

# Create router
proxy_router = APIRouter()

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

PROXY_HEADER_PREFIX = "proxy-"

# Headers scoped to the client -> proxy hop
HOP_HEADERS = frozenset({"host", "connection"})

PROXY_ERROR_BODY = "Proxy Error"

PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]

# Scope key holding the URL host of an absolute-form request target
URL_HOST_SCOPE_KEY = "apt_proxy.url_host"


@dataclass
class ProxyState:
    """Read-only state shared by all requests of one running proxy."""

    credential: BasicCredential
    client: httpx.AsyncClient


# ============================================================================
# Dependencies
# ============================================================================

def get_proxy_state(request: Request) -> ProxyState:
    """
    Dependency to get the proxy state from app state.

    Args:
        request: FastAPI request object

    Returns:
        ProxyState holding the credential and the upstream client

    Raises:
        HTTPException: If the application lifespan has not run
    """
    state = getattr(request.app.state, "proxy_state", None)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not initialized",
            headers={"Connection": "close"},
        )
    return state


# ============================================================================
# Request Transform
# ============================================================================

def host_without_port(host_header: str) -> str:
    """
    Strip the port from a Host header value.

    Handles bracketed IPv6 literals such as ``[::1]:3142``.
    """
    if not host_header:
        return ""
    return urlsplit(f"//{host_header.strip()}").hostname or ""


def resolve_target_host(url_host: Optional[str], host_header: Optional[str]) -> str:
    """
    Work out which upstream host the client wants to reach.

    When the request URL names the proxy's own loopback address the client
    is addressing the proxy directly, so the Host header carries the real
    target. Otherwise the URL host is the target.

    Args:
        url_host: Host parsed from the request URL
        host_header: Raw Host header value (may include a port)

    Returns:
        Target hostname without port
    """
    if not url_host or normalize_host(url_host) in LOOPBACK_HOSTS:
        return host_without_port(host_header or "") or "localhost"
    return url_host


def build_target_url(target_host: str, raw_path: str, query_string: str = "") -> str:
    """Build the outbound https URL, keeping the path percent-encoded as received."""
    host = f"[{target_host}]" if ":" in target_host else target_host
    url = f"https://{host}{raw_path or '/'}"
    if query_string:
        url = f"{url}?{query_string}"
    return url


def build_upstream_headers(
    headers: Iterable[Tuple[str, str]],
    target_host: str,
    credential: BasicCredential,
) -> httpx.Headers:
    """
    Build headers for the upstream request.

    Drops proxy-hop headers, pins Host to the target and, for trusted hosts
    only, overwrites Authorization with the stored credential.

    Args:
        headers: Inbound header pairs (duplicates preserved)
        target_host: Resolved target host
        credential: Stored repository credential

    Returns:
        Headers for the upstream request
    """
    kept = [
        (name, value)
        for name, value in headers
        if not name.lower().startswith(PROXY_HEADER_PREFIX)
        and name.lower() not in HOP_HEADERS
    ]

    upstream_headers = httpx.Headers(kept, encoding="latin-1")
    upstream_headers["Host"] = target_host

    if is_trusted_host(target_host):
        upstream_headers["Authorization"] = credential.header_value
    return upstream_headers


def request_has_body(headers) -> bool:
    return "content-length" in headers or "transfer-encoding" in headers


# ============================================================================
# Response Transform
# ============================================================================

def build_client_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """
    Copy upstream response headers for the client and force connection close.

    Some apt versions keep idle connections around for several seconds
    before noticing the proxy closed them, stalling the next request.
    """
    client_headers = [
        (name, value) for name, value in headers if name.lower() != "connection"
    ]
    client_headers.append(("Connection", "close"))
    return client_headers


def encode_raw_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in headers
    ]


def decode_raw_headers(headers: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[str, str]]:
    return [(name.decode("latin-1"), value.decode("latin-1")) for name, value in headers]


def proxy_error_response() -> Response:
    return PlainTextResponse(
        PROXY_ERROR_BODY,
        status_code=status.HTTP_502_BAD_GATEWAY,
        headers={"Connection": "close"},
    )


async def relay_body(upstream: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
    """
    Stream the upstream body to the client without decoding it.

    The response headers are already on the wire here, so a transport
    failure can only end the body early.
    """
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Upstream stream error for {target_url}: {e}")
    finally:
        await upstream.aclose()


# ============================================================================
# Proxy Endpoint
# ============================================================================

async def forward_request(request: Request, state: ProxyState) -> Response:
    """
    Forward one inbound request to the repository and stream the answer back.

    Args:
        request: Inbound request from the package manager
        state: Proxy state with credential and upstream client

    Returns:
        Streaming response mirroring the upstream response, or 502 on failure
    """
    target_url: Optional[str] = None
    upstream: Optional[httpx.Response] = None

    try:
        url_host = request.scope.get(URL_HOST_SCOPE_KEY) or request.url.hostname
        target_host = resolve_target_host(url_host, request.headers.get("host"))

        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else request.url.path
        query_string = request.scope.get("query_string", b"").decode("latin-1")
        target_url = build_target_url(target_host, path, query_string)

        headers = build_upstream_headers(
            decode_raw_headers(request.headers.raw), target_host, state.credential
        )
        content = request.stream() if request_has_body(request.headers) else None

        logger.debug(f"Proxying {request.method} {target_url}")

        upstream_request = state.client.build_request(
            request.method, target_url, headers=headers, content=content
        )
        upstream = await state.client.send(upstream_request, stream=True)

        response = StreamingResponse(
            relay_body(upstream, target_url),
            status_code=upstream.status_code,
        )
        response.raw_headers = encode_raw_headers(
            build_client_headers(decode_raw_headers(upstream.headers.raw))
        )
        return response

    except Exception as e:
        logger.error(
            f"Proxy error for {request.method} {target_url or request.url.path}: {e}",
            exc_info=True,
        )
        if upstream is not None:
            await upstream.aclose()
        return proxy_error_response()


@proxy_router.api_route("/{path:path}", methods=PROXIED_METHODS)
async def proxy_all(
    request: Request,
    path: str,
    state: ProxyState = Depends(get_proxy_state),
):
    """Catch-all route relaying every request to the resolved upstream."""
    return await forward_request(request, state)
