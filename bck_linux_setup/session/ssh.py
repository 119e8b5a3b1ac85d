"""
SSH helpers: client detection, remote command and argument construction,
and running the client with the operator's terminal attached.
"""

import logging
import shlex
import subprocess
from typing import List, Optional, Sequence

from ..config import PROXY_PORT
from ..proxy import PROXY_HOST

logger = logging.getLogger(__name__)

SSH_EXECUTABLE = "ssh"

# Seconds to wait after terminate() before killing the client
TERMINATE_GRACE_SECONDS = 5.0


def check_ssh_client_installed() -> bool:
    """Return True when `ssh -V` runs and exits with status 0."""
    try:
        result = subprocess.run(
            [SSH_EXECUTABLE, "-V"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as e:
        logger.debug(f"ssh client not available: {e}")
        return False
    return result.returncode == 0


def build_remote_command(
    commands: Sequence[str],
    run_commands: bool,
    setup_script: Optional[str] = None,
) -> Optional[str]:
    """
    Build the command string passed to ssh.

    Args:
        commands: Configured remote commands
        run_commands: Command execution mode instead of interactive mode
        setup_script: Proxy bootstrap script, when the proxy is in use

    Returns:
        Remote command, or None for a plain interactive shell
    """
    if run_commands:
        joined = " && ".join(commands)
        if setup_script is None:
            return joined
        return "bash -c " + shlex.quote(f"{setup_script}\n\n{joined}")

    if setup_script is None:
        return None
    # The bootstrap trap fires when the inner login shell exits
    return "bash -c " + shlex.quote(f"{setup_script}\nbash")


def build_ssh_args(
    destination: str,
    remote_command: Optional[str] = None,
    local_port: Optional[int] = None,
) -> List[str]:
    """
    Build the ssh argument vector.

    Args:
        destination: user@host
        remote_command: Command to run remotely, None for a shell
        local_port: Bound proxy port to expose on the device as PROXY_PORT,
                    None when no tunnel is wanted

    Returns:
        Argument list starting with the ssh executable
    """
    args = [SSH_EXECUTABLE, "-t"]
    if local_port is not None:
        args += [
            "-o", "ExitOnForwardFailure=yes",
            "-R", f"{PROXY_PORT}:{PROXY_HOST}:{local_port}",
        ]
    args.append(destination)
    if remote_command is not None:
        args.append(remote_command)
    return args


def run_ssh(args: Sequence[str]) -> int:
    """
    Run ssh with inherited stdin/stdout/stderr and wait for it.

    If waiting is interrupted by an exception (signal, KeyboardInterrupt),
    the client is terminated, killed after a grace period, and the
    exception is re-raised.

    Returns:
        ssh exit status
    """
    logger.debug(f"Starting ssh session with {len(args)} arguments")
    process = subprocess.Popen(list(args))
    try:
        return process.wait()
    except BaseException:
        terminate_process(process)
        raise


def terminate_process(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("ssh did not exit after terminate, killing it")
        process.kill()
        process.wait()
