"""
Configuration module for the device setup tool.

This module uses Pydantic Settings to load and validate environment variables
for repository credentials, the local APT proxy listener, upstream timeouts
and logging.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import CliArguments, SessionOptions, SetupDeviceConfig


# Standard APT proxy port (apt-cacher-ng)
PROXY_PORT = 3142

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Repository credentials are optional here because the CLI falls back to
    interactive prompts when they are missing.
    """

    # =========================================================================
    # Repository Credentials (myBeckhoff account)
    # =========================================================================

    BCK_USERNAME: Optional[str] = Field(
        None,
        description="myBeckhoff account email used for repository authentication",
    )

    BCK_PASSWORD: Optional[SecretStr] = Field(
        None,
        description="myBeckhoff account password used for repository authentication",
    )

    # =========================================================================
    # Local Proxy Configuration
    # =========================================================================

    APT_PROXY_PORT: int = Field(
        default=PROXY_PORT,
        description="Local loopback port for the APT proxy (0 picks a free port)",
        ge=0,
        le=65535,
    )

    PROXY_STARTUP_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Seconds to wait for the proxy listener to become ready",
        gt=0,
    )

    # =========================================================================
    # Upstream Repository Configuration
    # =========================================================================

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=60.0,
        description="Read/write timeout for proxied upstream requests",
        gt=0,
    )

    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Connect timeout for upstream requests and the pre-flight check",
        gt=0,
    )

    # =========================================================================
    # SSH / Logging
    # =========================================================================

    SSH_DEFAULT_USERNAME: str = Field(
        default="Administrator",
        description="SSH username used when neither CLI nor config file names one",
        min_length=1,
    )

    LOG_LEVEL: str = Field(
        default="WARNING",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars not defined here
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate and normalise the logging level name.

        Args:
            v: Logging level name in any case

        Returns:
            Upper-case logging level name

        Raises:
            ValueError: If the level is not a standard logging level
        """
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {list(LOG_LEVELS)}, got: {v}")
        return level

    @field_validator("BCK_USERNAME")
    @classmethod
    def blank_username_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def bck_password_value(self) -> Optional[str]:
        """Plain repository password, or None when unset or empty."""
        if self.BCK_PASSWORD is None:
            return None
        return self.BCK_PASSWORD.get_secret_value() or None


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the process lifetime.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are present but invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def load_device_config(path: Union[str, Path]) -> SetupDeviceConfig:
    """
    Load and validate a JSON device configuration file.

    Args:
        path: Path to the JSON file

    Returns:
        Validated SetupDeviceConfig

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path).expanduser().resolve()

    if not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e

    try:
        return SetupDeviceConfig.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config file {config_path}:\n{e}") from e


def detect_conflicts(args: CliArguments, device_config: SetupDeviceConfig) -> List[str]:
    """
    List parameters given both on the command line and in the config file.

    Returns:
        Conflicting parameter names, empty if there are none
    """
    conflicts = []
    if args.host and device_config.host:
        conflicts.append("host")
    if args.username and device_config.username:
        conflicts.append("username")
    if args.use_proxy is not None and device_config.useProxy is not None:
        conflicts.append("useProxy/use-proxy")
    return conflicts


def merge_options(
    args: CliArguments,
    device_config: Optional[SetupDeviceConfig] = None,
    settings: Optional[Settings] = None,
) -> SessionOptions:
    """
    Merge CLI arguments with the config file and defaults.

    CLI arguments win when there is no conflict, then the config file, then
    defaults from settings.

    Args:
        args: Parsed command line
        device_config: Loaded config file, if any
        settings: Application settings (defaults to get_settings())

    Returns:
        SessionOptions ready for the orchestrator

    Raises:
        ConfigurationError: On conflicts, a missing host or missing commands
    """
    settings = settings or get_settings()

    if args.run_commands and not args.config:
        raise ConfigurationError(
            "--run-commands requires --config parameter",
            hint="Example: bck-linux-setup --run-commands --config my-config.json",
        )

    device_config = device_config or SetupDeviceConfig()

    conflicts = detect_conflicts(args, device_config)
    if conflicts:
        lines = "\n".join(f"  - {name}" for name in conflicts)
        raise ConfigurationError(
            "Parameter conflict: The following parameters are specified in both "
            f"CLI arguments and config file:\n{lines}",
            hint="Remove from either CLI arguments or config file",
        )

    host = args.host or device_config.host
    if not host:
        raise ConfigurationError(
            "Missing required parameter: <host>",
            hint="Example: bck-linux-setup 192.168.1.10",
        )

    if args.run_commands and not device_config.commands:
        raise ConfigurationError(
            "--run-commands requires a config file with at least one command"
        )

    use_proxy = args.use_proxy
    if use_proxy is None:
        use_proxy = device_config.useProxy
    if use_proxy is None:
        use_proxy = False

    return SessionOptions(
        host=host,
        username=args.username or device_config.username or settings.SSH_DEFAULT_USERNAME,
        use_proxy=use_proxy,
        commands=device_config.commands,
        run_commands=args.run_commands,
        bck_username=args.bck_username,
    )
