"""
APT Proxy Server
================

Owns one loopback listener serving the forwarding application and the
pre-flight connectivity check against the repository.

Lifecycle:
    Stopped --start()--> Running --stop()--> Stopped

- start() on a running instance raises ProxyAlreadyRunningError
- stop() on a stopped instance is a no-op
- a stopped instance can be started again

The listener runs uvicorn on a background thread. The socket is bound in
start() itself, so a port conflict surfaces synchronously to the caller.
"""

import logging
import os
import socket
import threading
import time
from importlib import resources
from typing import Any, Optional

import httpx
import uvicorn

from ..config import PROXY_PORT, Settings, get_settings
from ..exceptions import (
    ProxyAlreadyRunningError,
    ProxyStartError,
    UpstreamAuthenticationError,
    UpstreamError,
)
from .app import create_proxy_app
from .auth import REPOSITORY_HOST, REPOSITORY_URL, BasicCredential

logger = logging.getLogger(__name__)

# Loopback only: the device reaches the proxy through the SSH tunnel
PROXY_HOST = "127.0.0.1"

SETUP_SCRIPT_NAME = "setup-apt-proxy.sh"


def normalize_script(text: str) -> str:
    """Drop carriage returns and surrounding whitespace from a shell script."""
    return text.replace("\r", "").strip()


class AptProxy:
    """
    APT proxy server that injects repository authentication.

    Attributes:
        port: Bound port while running, configured port otherwise
        is_running: Whether the listener is up
    """

    def __init__(
        self,
        auth_username: str,
        auth_password: str,
        port: int = PROXY_PORT,
        *,
        settings: Optional[Settings] = None,
        transport: Optional[Any] = None,
    ):
        """
        Initialize a stopped proxy instance.

        Args:
            auth_username: Repository account name
            auth_password: Repository account password
            port: Local port to bind (0 picks a free port)
            settings: Application settings (defaults to get_settings())
            transport: Optional httpx transport for all upstream traffic,
                       used by tests to stub the repository
        """
        self._credential = BasicCredential.from_login(auth_username, auth_password)
        self._port = port
        self._settings = settings or get_settings()
        self._transport = transport

        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self._bound_port: Optional[int] = None

    def __repr__(self) -> str:
        state = "running" if self.is_running else "stopped"
        return f"AptProxy(host={PROXY_HOST!r}, port={self.port}, {state})"

    def __enter__(self) -> "AptProxy":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def port(self) -> int:
        if self._bound_port is not None:
            return self._bound_port
        return self._port

    @property
    def is_running(self) -> bool:
        return self._server is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Bind the loopback listener and start serving.

        Raises:
            ProxyAlreadyRunningError: If the instance is already running
            ProxyStartError: If the port cannot be bound or the server
                             does not come up in time
        """
        if self._server is not None:
            raise ProxyAlreadyRunningError()

        sock = self._bind()
        bound_port = sock.getsockname()[1]

        app = create_proxy_app(self._credential, self._settings, self._transport)
        config = uvicorn.Config(
            app,
            http="h11",
            loop="asyncio",
            lifespan="on",
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=1,
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [sock]},
            name=f"apt-proxy-{bound_port}",
            daemon=True,
        )
        # Tracked from here on so stop() can tear down a half-started listener
        self._server = server
        self._thread = thread
        self._socket = sock
        self._bound_port = bound_port
        thread.start()

        try:
            started = self._wait_until_started(server, thread)
        except BaseException:
            self.stop()
            raise

        if not started:
            self.stop()
            raise ProxyStartError(
                f"APT proxy did not start on {PROXY_HOST}:{bound_port}"
            )

        logger.info(f"APT proxy listening on {PROXY_HOST}:{bound_port}")

    def stop(self) -> None:
        """
        Close the listener if running. Safe to call any number of times.

        If waiting for the server thread is interrupted, the socket is still
        closed and the state cleared before the exception propagates.
        """
        if self._server is None:
            return

        server, thread, sock = self._server, self._thread, self._socket
        server.should_exit = True
        try:
            thread.join(timeout=self._settings.PROXY_STARTUP_TIMEOUT_SECONDS)
            if thread.is_alive():
                logger.warning("APT proxy did not shut down gracefully, forcing exit")
                server.force_exit = True
                thread.join(timeout=1.0)
        finally:
            sock.close()
            self._server = None
            self._thread = None
            self._socket = None
            self._bound_port = None

        logger.info("APT proxy stopped")

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        # On Windows SO_REUSEADDR would let a second listener share the port
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((PROXY_HOST, self._port))
        except OSError as e:
            sock.close()
            raise ProxyStartError(
                f"Cannot bind APT proxy to {PROXY_HOST}:{self._port}: {e}"
            ) from e
        return sock

    def _wait_until_started(self, server: uvicorn.Server, thread: threading.Thread) -> bool:
        deadline = time.monotonic() + self._settings.PROXY_STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if not thread.is_alive() or time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    # =========================================================================
    # Pre-flight Check
    # =========================================================================

    def check_connection(self) -> None:
        """
        Check authenticated connectivity to the Beckhoff APT repository.

        Sends a HEAD request straight to the repository, bypassing the
        listener. Redirects are not followed and count as success.

        Raises:
            UpstreamAuthenticationError: If the repository answers 401
            UpstreamError: On any other status >= 400 or a transport failure
        """
        timeout = httpx.Timeout(self._settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS)
        try:
            with httpx.Client(
                timeout=timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = client.head(
                    REPOSITORY_URL,
                    headers={"Authorization": self._credential.header_value},
                )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Cannot reach {REPOSITORY_HOST}: {e}") from e

        logger.debug(f"Repository pre-flight returned {response.status_code}")

        if response.status_code == 401:
            raise UpstreamAuthenticationError()

        if response.status_code >= 400:
            raise UpstreamError(
                f"Server returned status {response.status_code}",
                status_code=response.status_code,
            )

    # =========================================================================
    # Bootstrap Script
    # =========================================================================

    @staticmethod
    def get_setup_script() -> str:
        """
        Device-side script that routes apt through the tunneled proxy port.

        Returns:
            Script text with Unix line endings, trimmed
        """
        script = resources.files(__package__).joinpath("scripts").joinpath(SETUP_SCRIPT_NAME)
        return normalize_script(script.read_text(encoding="utf-8"))
