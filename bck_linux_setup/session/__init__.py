"""
Session Package
===============

Runs one operator session against a device: optional APT proxy, SSH with a
reverse tunnel, and cleanup on exit or signal.

Main Components:
----------------
- ssh.py: ssh client detection, remote command and argument construction
- lifecycle.py: proxy_session() and shutdown_signals() context managers
- orchestrator.py: run_session() tying the pieces together
"""

from .orchestrator import run_session

__all__ = ["run_session"]
