"""
Interactive prompts for repository credentials.
"""

from typing import Callable, Optional, Tuple

from rich.console import Console
from rich.prompt import Prompt

from .config import Settings
from .exceptions import ConfigurationError

EMAIL_PROMPT = "[cyan]myBeckhoff account email[/cyan]"
PASSWORD_PROMPT = "[cyan]myBeckhoff account password[/cyan]"


def prompt_for_input(prompt: str, console: Optional[Console] = None) -> str:
    """Ask for one line of input, trimmed. Empty input or EOF returns ""."""
    try:
        return Prompt.ask(prompt, console=console, default="", show_default=False).strip()
    except EOFError:
        return ""


def prompt_for_password(prompt: str, console: Optional[Console] = None) -> str:
    """Ask for a password without echoing it. EOF returns ""."""
    try:
        return Prompt.ask(prompt, console=console, password=True, default="", show_default=False)
    except EOFError:
        return ""


def resolve_credentials(
    cli_username: Optional[str],
    settings: Settings,
    console: Optional[Console] = None,
    ask_input: Callable[..., str] = prompt_for_input,
    ask_password: Callable[..., str] = prompt_for_password,
) -> Tuple[str, str]:
    """
    Collect repository credentials for the proxy.

    Username: --bck-username, then BCK_USERNAME, then a prompt.
    Password: BCK_PASSWORD, then a masked prompt.

    Returns:
        (username, password)

    Raises:
        ConfigurationError: If either value ends up empty
    """
    username = cli_username or settings.BCK_USERNAME
    if not username:
        username = ask_input(EMAIL_PROMPT, console=console)

    password = settings.bck_password_value
    if not password:
        password = ask_password(PASSWORD_PROMPT, console=console)

    if not username or not password:
        raise ConfigurationError("Repository proxy requires both username and password")

    return username, password
