"""
Unit Tests for the APT Proxy Server
===================================

Tests for bck_linux_setup/proxy/server.py

Test Coverage:
--------------
1. Lifecycle (start, stop, double start, idempotent stop, restart)
2. Port conflicts surfacing as ProxyStartError
3. Pre-flight check outcomes (401, other errors, success, transport failure)
4. Bootstrap script loading
5. End-to-end forwarding of absolute-form requests through a live listener

Run tests:
----------
    pytest bck_linux_setup/tests/test_server.py -v
"""

import socket
from unittest.mock import patch

import httpx
import pytest

from bck_linux_setup.exceptions import (
    ProxyAlreadyRunningError,
    ProxyStartError,
    UpstreamAuthenticationError,
    UpstreamError,
)
from bck_linux_setup.proxy import PROXY_HOST, AptProxy
from bck_linux_setup.proxy.server import normalize_script


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def proxy(mock_settings, upstream):
    """Stopped proxy on an ephemeral port with a stubbed repository"""
    instance = AptProxy(
        "user@example.com",
        "s3cret",
        port=0,
        settings=mock_settings,
        transport=upstream.transport(),
    )
    yield instance
    instance.stop()


@pytest.fixture
def busy_port():
    """A loopback port held by another listener"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind((PROXY_HOST, 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def proxy_client(proxy: AptProxy) -> httpx.Client:
    return httpx.Client(proxy=f"http://{PROXY_HOST}:{proxy.port}", trust_env=False, timeout=10.0)


# ============================================================================
# Lifecycle Tests
# ============================================================================

class TestLifecycle:
    """Test start/stop state transitions"""

    def test_start_binds_ephemeral_port(self, proxy):
        proxy.start()

        assert proxy.is_running
        assert proxy.port > 0

        with socket.create_connection((PROXY_HOST, proxy.port), timeout=2):
            pass

    def test_double_start_raises(self, proxy):
        proxy.start()

        with pytest.raises(ProxyAlreadyRunningError, match="already running"):
            proxy.start()

        assert proxy.is_running

    def test_stop_is_idempotent(self, proxy):
        proxy.stop()
        proxy.start()
        proxy.stop()
        proxy.stop()

        assert not proxy.is_running

    def test_stop_closes_listener(self, proxy):
        proxy.start()
        port = proxy.port
        proxy.stop()

        with pytest.raises(OSError):
            socket.create_connection((PROXY_HOST, port), timeout=1).close()

    def test_restart_after_stop(self, proxy):
        proxy.start()
        proxy.stop()
        proxy.start()

        assert proxy.is_running

    def test_port_conflict_raises_start_error(self, mock_settings, busy_port):
        proxy = AptProxy("u", "p", port=busy_port, settings=mock_settings)

        with pytest.raises(ProxyStartError):
            proxy.start()

        assert not proxy.is_running

    def test_interrupted_stop_still_closes_listener(self, proxy):
        proxy.start()
        port = proxy.port
        thread = proxy._thread

        with patch.object(thread, "join", side_effect=KeyboardInterrupt()):
            with pytest.raises(KeyboardInterrupt):
                proxy.stop()

        assert not proxy.is_running
        thread.join(timeout=5)
        assert not thread.is_alive()
        with pytest.raises(OSError):
            socket.create_connection((PROXY_HOST, port), timeout=1).close()

    def test_interrupted_start_leaves_nothing_running(self, proxy):
        threads = []

        def interrupt(server, thread):
            threads.append(thread)
            raise KeyboardInterrupt()

        with patch.object(proxy, "_wait_until_started", side_effect=interrupt):
            with pytest.raises(KeyboardInterrupt):
                proxy.start()

        assert not proxy.is_running
        threads[0].join(timeout=5)
        assert not threads[0].is_alive()

    def test_context_manager_stops_on_error(self, proxy):
        with pytest.raises(RuntimeError):
            with proxy:
                assert proxy.is_running
                raise RuntimeError("boom")

        assert not proxy.is_running

    def test_repr_hides_credentials(self, proxy):
        assert "s3cret" not in repr(proxy)
        assert "user@example.com" not in repr(proxy)


# ============================================================================
# Pre-flight Check Tests
# ============================================================================

class TestCheckConnection:
    """Test the repository pre-flight check"""

    def test_success_sends_authenticated_head(self, proxy, upstream, expected_authorization):
        proxy.check_connection()

        request = upstream.last
        assert request.method == "HEAD"
        assert request.url.scheme == "https"
        assert request.url.host == "deb.beckhoff.com"
        assert request.headers["authorization"] == expected_authorization

    def test_unauthorized_raises_authentication_error(self, proxy, upstream):
        upstream.response_factory = lambda request: httpx.Response(401)

        with pytest.raises(UpstreamAuthenticationError) as exc_info:
            proxy.check_connection()

        assert str(exc_info.value) == "Authentication failed - invalid username or password"
        assert exc_info.value.status_code == 401

    def test_server_error_raises_upstream_error(self, proxy, upstream):
        upstream.response_factory = lambda request: httpx.Response(503)

        with pytest.raises(UpstreamError) as exc_info:
            proxy.check_connection()

        assert not isinstance(exc_info.value, UpstreamAuthenticationError)
        assert str(exc_info.value) == "Server returned status 503"
        assert exc_info.value.status_code == 503

    def test_redirect_counts_as_success(self, proxy, upstream):
        upstream.response_factory = lambda request: httpx.Response(
            302, headers={"Location": "https://www.beckhoff.com/"}
        )

        proxy.check_connection()

        assert len(upstream.requests) == 1

    def test_transport_failure_raises_upstream_error(self, proxy, upstream):
        def fail(request):
            raise httpx.ConnectError("Name or service not known", request=request)

        upstream.response_factory = fail

        with pytest.raises(UpstreamError, match="Cannot reach deb.beckhoff.com"):
            proxy.check_connection()


# ============================================================================
# Bootstrap Script Tests
# ============================================================================

class TestSetupScript:
    """Test the device-side bootstrap script"""

    def test_script_is_normalized(self):
        script = AptProxy.get_setup_script()

        assert script
        assert "\r" not in script
        assert script == script.strip()

    def test_script_points_apt_at_tunneled_port(self):
        script = AptProxy.get_setup_script()

        assert "127.0.0.1:3142" in script
        assert "deb.beckhoff.com" in script
        assert "trap" in script

    def test_normalize_script(self):
        assert normalize_script("\n  echo a\r\necho b\r\n\n") == "echo a\necho b"


# ============================================================================
# End-to-end Tests
# ============================================================================

class TestLiveProxy:
    """Drive a running listener the way a package manager does"""

    def test_absolute_form_request_forwarded(self, proxy, upstream, expected_authorization):
        proxy.start()

        with proxy_client(proxy) as client:
            response = client.get("http://deb.beckhoff.com/dists/stable/Release")

        assert response.status_code == 200
        assert response.content == b"ok"
        assert response.headers["connection"] == "close"

        forwarded = upstream.last
        assert str(forwarded.url) == "https://deb.beckhoff.com/dists/stable/Release"
        assert forwarded.headers["authorization"] == expected_authorization
        assert "proxy-authorization" not in forwarded.headers

    def test_untrusted_absolute_form_request_has_no_credential(self, proxy, upstream):
        proxy.start()

        with proxy_client(proxy) as client:
            response = client.get("http://example.org/file?x=1")

        assert response.status_code == 200
        assert str(upstream.last.url) == "https://example.org/file?x=1"
        assert "authorization" not in upstream.last.headers

    def test_upstream_failure_returns_502_and_listener_survives(self, proxy, upstream):
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=b"ok")

        upstream.response_factory = flaky
        proxy.start()

        with proxy_client(proxy) as client:
            first = client.get("http://deb.beckhoff.com/a")
            second = client.get("http://deb.beckhoff.com/b")

        assert first.status_code == 502
        assert first.text == "Proxy Error"
        assert second.status_code == 200
        assert proxy.is_running

    def test_direct_request_uses_host_header(self, proxy, upstream):
        proxy.start()

        with httpx.Client(trust_env=False, timeout=10.0) as client:
            response = client.get(
                f"http://{PROXY_HOST}:{proxy.port}/dists/stable/InRelease",
                headers={"Host": "deb.beckhoff.com"},
            )

        assert response.status_code == 200
        assert str(upstream.last.url) == "https://deb.beckhoff.com/dists/stable/InRelease"

    def test_malformed_target_returns_502(self, proxy, upstream):
        proxy.start()

        with socket.create_connection((PROXY_HOST, proxy.port), timeout=5) as sock:
            sock.sendall(b"GET http://[bad/x HTTP/1.1\r\nHost: deb.beckhoff.com\r\n\r\n")
            data = b""
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                data += chunk

        assert data.startswith(b"HTTP/1.1 502 ")
        assert data.endswith(b"Proxy Error")
        assert upstream.requests == []
        assert proxy.is_running
