"""
Session lifecycle context managers.

proxy_session() guarantees the proxy is stopped exactly once whatever ends
the session. shutdown_signals() turns SIGINT/SIGTERM into SessionInterrupted
so the normal unwinding path runs the cleanup. signals_deferred() holds
that interrupt back while the proxy is being started or stopped.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from rich.console import Console

from ..exceptions import ProxyStartError, SessionInterrupted
from ..proxy import AptProxy

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _SignalDeferral:
    """Critical-section bookkeeping shared with the shutdown signal handler."""

    def __init__(self) -> None:
        self.depth = 0
        self.pending: Optional[int] = None


_deferral = _SignalDeferral()


def _announce(console: Optional[Console], message: str, end: str = "\n") -> None:
    if console is not None:
        console.print(message, end=end)


@contextmanager
def signals_deferred() -> Iterator[None]:
    """
    Hold back SessionInterrupted while the block runs.

    A shutdown signal received inside the block is raised when the block
    completes normally. If the block raises, that exception wins and the
    interrupt is dropped.
    """
    _deferral.depth += 1
    try:
        yield
    finally:
        _deferral.depth -= 1
        signum = _deferral.pending if _deferral.depth == 0 else None
        if _deferral.depth == 0:
            _deferral.pending = None

    if signum is not None:
        raise SessionInterrupted(signum)


@contextmanager
def proxy_session(proxy: AptProxy, console: Optional[Console] = None) -> Iterator[AptProxy]:
    """
    Start the proxy on entry and stop it on exit.

    Start and stop run with shutdown signals deferred, so an interrupt
    never leaves a half-started or half-stopped listener behind.

    Args:
        proxy: Stopped proxy instance
        console: Optional console for operator progress lines

    Usage:
        with proxy_session(proxy, console):
            proxy.check_connection()
            run_ssh(args)
    """
    configured_port = proxy.port
    if configured_port:
        _announce(console, f"[cyan]Starting APT proxy server on localhost:{configured_port}...[/cyan]", end=" ")
    else:
        _announce(console, "[cyan]Starting APT proxy server...[/cyan]", end=" ")

    started = False
    try:
        with signals_deferred():
            try:
                proxy.start()
            except ProxyStartError:
                _announce(console, "[red]✗[/red]")
                raise
            started = True
            if configured_port:
                _announce(console, "[green]✓[/green]")
            else:
                _announce(console, f"[green]✓[/green] [cyan](localhost:{proxy.port})[/cyan]")

        yield proxy
    finally:
        if started:
            _announce(console, "\n[cyan]Stopping APT proxy server...[/cyan]", end=" ")
            with signals_deferred():
                proxy.stop()
            _announce(console, "[green]✓[/green]")


@contextmanager
def shutdown_signals() -> Iterator[None]:
    """
    Raise SessionInterrupted on the first SIGINT or SIGTERM.

    Later signals are logged and ignored so cleanup runs once. Inside
    signals_deferred() the first signal is recorded and raised when the
    critical section ends. Previous handlers are restored on exit. Outside
    the main thread this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    received = []

    def handle_signal(signum, frame):
        name = signal.Signals(signum).name
        if received:
            logger.warning(f"Ignoring {name}, shutdown in progress")
            return
        received.append(signum)
        if _deferral.depth:
            logger.info(f"Received {name}, shutting down after the proxy settles")
            _deferral.pending = signum
            return
        logger.info(f"Received {name}, shutting down")
        raise SessionInterrupted(signum)

    previous = {signum: signal.getsignal(signum) for signum in SHUTDOWN_SIGNALS}
    for signum in SHUTDOWN_SIGNALS:
        signal.signal(signum, handle_signal)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
