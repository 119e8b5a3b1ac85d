"""
Device Setup CLI - Entry Point
==============================

Execute commands on remote Beckhoff devices via SSH with APT proxy support.

Usage:
    Interactive mode (default):
        bck-linux-setup <host> [--username <user>] [--use-proxy] [--config <path>]

    Command execution mode:
        bck-linux-setup --run-commands --config <path>

Environment:
    BCK_USERNAME      myBeckhoff account email (for proxy auth)
    BCK_PASSWORD      myBeckhoff account password (for proxy auth)
    LOG_LEVEL         Diagnostic log level, written to stderr

Exit codes:
    0    success
    1    usage, config, pre-flight or remote command failure
    130  interrupted by SIGINT
    143  terminated by SIGTERM
"""

import argparse
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import LOG_LEVELS, get_settings, load_device_config, merge_options
from .exceptions import AptProxyError, ConfigurationError, SessionInterrupted
from .models import CliArguments
from .prompts import resolve_credentials
from .session import run_session
from .session.ssh import check_ssh_client_installed

logger = logging.getLogger(__name__)

USAGE = """
  Interactive mode (default):
    bck-linux-setup <host> [--username <user>] [--use-proxy] [--config <path>]

  Command execution mode:
    bck-linux-setup --run-commands --config <path>"""

EPILOG = """Modes:
  Interactive (default):  SSH into device with optional proxy setup
  Command execution:      Execute commands from config file and exit

Environment:
  BCK_USERNAME      myBeckhoff account email (for proxy auth)
  BCK_PASSWORD      myBeckhoff account password (for proxy auth)

Examples:
  # Interactive SSH session (uses default username: Administrator)
  bck-linux-setup 192.168.1.10

  # Execute commands from config
  bck-linux-setup --run-commands --config my-config.json"""

SSH_INSTALL_HINTS = (
    "Install instructions:",
    "  - Windows: Install OpenSSH Client (Settings > Apps > Optional Features)",
    "  - macOS: SSH is pre-installed",
    "  - Linux: sudo apt install openssh-client (Debian/Ubuntu) "
    "or sudo yum install openssh-clients (RHEL/CentOS)",
)


# Configure structured JSON logging
def setup_logging(log_level: str = "WARNING") -> None:
    """
    Configure structured logging for the application.

    Logs go to stderr so they never mix with the remote session on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bck-linux-setup",
        usage=USAGE,
        description="Execute commands on remote Beckhoff devices via SSH with APT proxy support",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("host", nargs="?", help="Target device IP address or hostname")
    parser.add_argument("--username", metavar="<user>", help="SSH username (default: Administrator)")
    parser.add_argument(
        "--use-proxy",
        action="store_const",
        const=True,
        default=None,
        help="Enable APT proxy for authenticated Beckhoff repositories",
    )
    parser.add_argument(
        "--run-commands",
        action="store_true",
        help="Execute commands from config file (requires --config)",
    )
    parser.add_argument(
        "--config",
        metavar="<path>",
        help="Configuration file path (required with --run-commands)",
    )
    parser.add_argument(
        "--bck-username",
        metavar="<email>",
        help="myBeckhoff account email for proxy auth (env: BCK_USERNAME)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Diagnostic log level (env: LOG_LEVEL, default: WARNING)",
    )
    parser.add_argument("--version", action="version", version=__version__, help="Show version number")
    return parser


def print_ssh_install_hints(console: Console) -> None:
    for line in SSH_INSTALL_HINTS:
        console.print(f"[yellow]{escape(line)}[/yellow]")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the CLI and return the process exit code.

    Args:
        argv: Command line without the program name (defaults to sys.argv[1:])
    """
    namespace = build_parser().parse_args(argv)

    console = Console()
    error_console = Console(stderr=True)

    try:
        settings = get_settings()
    except ValidationError as e:
        error_console.print(f"[red]Invalid environment configuration:[/red]\n{escape(str(e))}")
        return 1

    setup_logging(namespace.log_level or settings.LOG_LEVEL)

    if not check_ssh_client_installed():
        error_console.print("[red]SSH client is not installed or not in PATH[/red]")
        print_ssh_install_hints(console)
        return 1

    args = CliArguments(
        host=namespace.host,
        username=namespace.username,
        use_proxy=namespace.use_proxy,
        run_commands=namespace.run_commands,
        config=namespace.config,
        bck_username=namespace.bck_username,
    )

    try:
        device_config = None
        if args.config:
            device_config = load_device_config(args.config)
        options = merge_options(args, device_config, settings)

        credentials = None
        if options.use_proxy:
            console.print("[cyan]APT proxy enabled - myBeckhoff account credentials required[/cyan]")
            credentials = resolve_credentials(options.bck_username, settings, console)

        return run_session(
            options,
            credentials,
            settings=settings,
            console=console,
            error_console=error_console,
        )

    except ConfigurationError as e:
        error_console.print(f"[red]{escape(str(e))}[/red]")
        if e.hint:
            console.print(f"[yellow]{escape(e.hint)}[/yellow]")
        return 1

    except AptProxyError as e:
        logger.debug("Session failed", exc_info=True)
        error_console.print(f"[red]{escape(str(e))}[/red]")
        return 1

    except SessionInterrupted as e:
        logger.info(str(e))
        return e.exit_code

    except KeyboardInterrupt:
        # Ctrl+C at a credential prompt, before signal handlers are installed
        console.print("")
        return 130


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
