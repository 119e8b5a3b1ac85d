"""
Proxy Package
=============

This package implements the local forwarding proxy that lets a device's
package manager use the authenticated Beckhoff APT repository.

Main Components:
----------------
- auth.py: Basic credential and the trusted-domain rule
- routes.py: FastAPI catch-all router with the request/response transform
- app.py: Application factory (lifespan-owned upstream client)
- server.py: AptProxy lifecycle (start, stop, pre-flight check, setup script)

Security Features:
------------------
- Loopback-only listener
- Credentials injected only for hosts under beckhoff.com
- Proxy-* and Connection headers never forwarded

Usage:
------
    from bck_linux_setup.proxy import AptProxy
    proxy = AptProxy(username, password)
    proxy.start()
"""

from .server import AptProxy, PROXY_HOST

__all__ = ["AptProxy", "PROXY_HOST"]
