"""
Repository Credential and Trust Rule
====================================

The credential is encoded once into a Basic auth token and is only ever
attached to requests for hosts under the trusted repository domain.
"""

import base64
from dataclasses import dataclass, field

# Domain suffix gating credential injection and the pre-flight check target
TRUSTED_DOMAIN = "beckhoff.com"
REPOSITORY_HOST = f"deb.{TRUSTED_DOMAIN}"
REPOSITORY_URL = f"https://{REPOSITORY_HOST}"


@dataclass(frozen=True)
class BasicCredential:
    """
    Pre-encoded Basic auth token.

    The token is excluded from repr so the credential never shows up in
    logs or tracebacks.
    """

    token: str = field(repr=False)

    @classmethod
    def from_login(cls, username: str, password: str) -> "BasicCredential":
        raw = f"{username}:{password}".encode("utf-8")
        return cls(token=base64.b64encode(raw).decode("ascii"))

    @property
    def header_value(self) -> str:
        """Value for the Authorization header"""
        return f"Basic {self.token}"


def normalize_host(host: str) -> str:
    return host.strip().lower().rstrip(".")


def is_trusted_host(host: str) -> bool:
    """
    Check whether a host is under the trusted repository domain.

    Matches whole DNS labels only, so ``deb.beckhoff.com`` and
    ``beckhoff.com`` match while ``evilbeckhoff.com`` does not.

    Args:
        host: Hostname without port

    Returns:
        True if credentials may be sent to this host
    """
    if not host:
        return False
    host = normalize_host(host)
    return host == TRUSTED_DOMAIN or host.endswith("." + TRUSTED_DOMAIN)
