"""
Beckhoff Linux Device Setup
===========================

Provisions Beckhoff embedded Linux devices over SSH. When the device needs
packages from the authenticated Beckhoff APT repository, a local forwarding
proxy injects the repository credentials and is exposed to the device
through a reverse SSH tunnel.

Architecture:
    Device apt -> ssh -R 3142 -> AptProxy (localhost:3142) -> https://deb.beckhoff.com

Packages:
    - proxy:   the authenticating forwarding proxy and its lifecycle
    - session: SSH command construction and the session orchestrator
"""

__version__ = "1.0.0"
