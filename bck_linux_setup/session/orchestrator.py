"""
Session Orchestrator
====================

Runs one session against a device:

1. Optionally start the APT proxy and check the repository credentials
2. Open ssh with a reverse tunnel to the proxy and the bootstrap script
3. Stop the proxy on every exit path (normal, remote failure, signal, error)

Errors from the proxy and the pre-flight check propagate to the caller;
the return value is the process exit code for completed sessions.
"""

import logging
from typing import Callable, Optional, Tuple

from rich.console import Console
from rich.markup import escape

from ..config import Settings, get_settings
from ..exceptions import UpstreamError
from ..models import SessionOptions
from ..proxy import AptProxy
from ..proxy.auth import REPOSITORY_HOST
from .lifecycle import proxy_session, shutdown_signals
from .ssh import build_remote_command, build_ssh_args, run_ssh

logger = logging.getLogger(__name__)

ProxyFactory = Callable[..., AptProxy]


def run_session(
    options: SessionOptions,
    credentials: Optional[Tuple[str, str]] = None,
    *,
    settings: Optional[Settings] = None,
    console: Optional[Console] = None,
    error_console: Optional[Console] = None,
    proxy_factory: ProxyFactory = AptProxy,
) -> int:
    """
    Run a device session and return the exit code.

    Args:
        options: Merged session options
        credentials: (username, password) for the repository, required
                     when options.use_proxy is set
        settings: Application settings (defaults to get_settings())
        console: Console for progress output
        error_console: Console for failures (stderr)
        proxy_factory: Callable building the proxy, replaced in tests

    Returns:
        0 on success, 1 when the remote commands failed

    Raises:
        ProxyStartError: If the proxy cannot be started
        UpstreamError: If the repository pre-flight check fails
        SessionInterrupted: On SIGINT/SIGTERM, after cleanup
    """
    settings = settings or get_settings()
    console = console or Console()
    error_console = error_console or Console(stderr=True)

    with shutdown_signals():
        if not options.use_proxy:
            status = _connect(options, console)
        else:
            if credentials is None:
                raise ValueError("Repository credentials are required when the proxy is enabled")
            username, password = credentials
            proxy = proxy_factory(username, password, settings.APT_PROXY_PORT, settings=settings)
            with proxy_session(proxy, console):
                _check_repository(proxy, console)
                status = _connect(
                    options,
                    console,
                    setup_script=proxy.get_setup_script(),
                    local_port=proxy.port,
                )

    if not options.run_commands:
        logger.debug(f"Interactive session ended with status {status}")
        return 0

    if status != 0:
        error_console.print(f"\n[red]Setup failed with exit code {status}[/red]")
        return 1

    console.print("[bold green]✓ Setup completed successfully[/bold green]")
    return 0


def _check_repository(proxy: AptProxy, console: Console) -> None:
    console.print(f"[cyan]Checking connection to {REPOSITORY_HOST}...[/cyan]", end=" ")
    try:
        proxy.check_connection()
    except UpstreamError:
        console.print("[red]✗[/red]")
        raise
    console.print("[green]✓[/green]")


def _connect(
    options: SessionOptions,
    console: Console,
    setup_script: Optional[str] = None,
    local_port: Optional[int] = None,
) -> int:
    destination = escape(options.destination)

    if options.run_commands:
        total = len(options.commands)
        console.print(
            f"[cyan]Connecting to [bold]{destination}[/bold], "
            f"executing [bold]{total}[/bold] command(s):[/cyan]"
        )
        for index, command in enumerate(options.commands, start=1):
            console.print(f"[yellow]\\[{index}/{total}][/yellow] {escape(command)}")
        console.print("")
    else:
        suffix = " with local APT proxy" if setup_script is not None else ""
        console.print(
            f"[cyan]Connecting to [bold]{destination}[/bold] in interactive mode{suffix}[/cyan]"
        )

    remote_command = build_remote_command(options.commands, options.run_commands, setup_script)
    args = build_ssh_args(options.destination, remote_command, local_port)
    status = run_ssh(args)
    logger.info(f"ssh exited with status {status}")
    return status
