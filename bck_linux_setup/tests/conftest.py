"""
Shared fixtures for the device setup tool tests.
"""

import base64
from typing import List

import httpx
import pytest

from bck_linux_setup.config import Settings, get_settings
from bck_linux_setup.proxy.auth import BasicCredential


@pytest.fixture
def mock_settings():
    """Settings isolated from the developer's environment and .env file"""
    return Settings(
        _env_file=None,
        BCK_USERNAME=None,
        BCK_PASSWORD=None,
        APT_PROXY_PORT=0,
        UPSTREAM_TIMEOUT_SECONDS=5.0,
        UPSTREAM_CONNECT_TIMEOUT_SECONDS=2.0,
        PROXY_STARTUP_TIMEOUT_SECONDS=5.0,
        SSH_DEFAULT_USERNAME="Administrator",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def credential():
    return BasicCredential.from_login("user@example.com", "s3cret")


@pytest.fixture
def expected_authorization():
    token = base64.b64encode(b"user@example.com:s3cret").decode("ascii")
    return f"Basic {token}"


class RecordingUpstream:
    """Stub repository recording every request it receives."""

    def __init__(self, response_factory=None):
        self.requests: List[httpx.Request] = []
        self.response_factory = response_factory or (lambda request: httpx.Response(200, content=b"ok"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.response_factory(request)
        # Hand back an unread stream, as a real transport does
        return httpx.Response(
            response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(response.content),
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def upstream():
    return RecordingUpstream()
