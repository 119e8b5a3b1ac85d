"""
Exceptions
==========

Error taxonomy for the proxy, the pre-flight check and the session.

Per-request proxy failures are not represented here: they are recovered
inside the request handler and answered with a 502 response.
"""

import signal
from typing import Optional


class AptProxyError(Exception):
    """Base exception for APT proxy errors"""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "Reason unknown")


class ProxyStartError(AptProxyError):
    """The proxy listener could not be bound or did not come up"""
    pass


class ProxyAlreadyRunningError(ProxyStartError):
    """start() was called on an instance that is already running"""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "Proxy server is already running")


class UpstreamError(AptProxyError):
    """The repository pre-flight check failed"""

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthenticationError(UpstreamError):
    """The repository rejected the credentials (HTTP 401)"""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Authentication failed - invalid username or password",
            status_code=401,
        )


class ConfigurationError(Exception):
    """
    Invalid command line, config file or missing required value

    Attributes:
        hint: Optional suggestion shown to the operator after the message
    """

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


class SessionInterrupted(Exception):
    """
    Raised from a signal handler to unwind the session.

    Attributes:
        signum: Signal number that interrupted the session
        exit_code: Conventional shell exit code (128 + signum)
    """

    def __init__(self, signum: int) -> None:
        self.signum = signum
        self.exit_code = 128 + signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")
