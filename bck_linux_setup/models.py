"""
Data Models Module

This module defines Pydantic models for the device config file, the parsed
command line and the merged options a session runs with.

Models are organized by functional area:
- Config file models (JSON device configuration)
- Command line models (parsed CLI arguments)
- Session models (merged, validated session options)
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Config File Models
# ============================================================================

class SetupDeviceConfig(BaseModel):
    """
    JSON device configuration file.

    Attributes:
        host: Device IP address or hostname (e.g. "192.168.1.100" or "cx8290")
        username: SSH username (e.g. "Administrator")
        commands: Commands to execute on the device via SSH
        useProxy: Enable the APT proxy for the authenticated repository
    """

    model_config = ConfigDict(extra="forbid")

    host: Optional[str] = Field(None, description="SSH host - IP address or hostname")
    username: Optional[str] = Field(None, description="SSH username")
    commands: List[str] = Field(
        default_factory=list,
        description="Commands to execute on the device via SSH",
    )
    useProxy: Optional[bool] = Field(
        None,
        description="Enable APT repository proxy with automatic authentication",
    )

    @field_validator("host", "username")
    @classmethod
    def blank_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("commands")
    @classmethod
    def validate_commands(cls, v: List[str]) -> List[str]:
        """Strip commands and reject blank entries"""
        commands = [command.strip() for command in v]
        for index, command in enumerate(commands):
            if not command:
                raise ValueError(f"Command #{index + 1} is empty")
        return commands


# ============================================================================
# Command Line Models
# ============================================================================

class CliArguments(BaseModel):
    """Parsed command line. None means the option was not given."""

    host: Optional[str] = Field(None, description="Target device from the positional argument")
    username: Optional[str] = Field(None, description="--username")
    use_proxy: Optional[bool] = Field(None, description="--use-proxy")
    run_commands: bool = Field(default=False, description="--run-commands")
    config: Optional[str] = Field(None, description="--config path")
    bck_username: Optional[str] = Field(None, description="--bck-username")


# ============================================================================
# Session Models
# ============================================================================

class SessionOptions(BaseModel):
    """Options a session runs with after merging CLI, config file and defaults."""

    host: str = Field(..., description="Target device", min_length=1)
    username: str = Field(..., description="SSH username", min_length=1)
    use_proxy: bool = Field(default=False, description="Start the APT proxy and tunnel")
    commands: List[str] = Field(default_factory=list, description="Remote commands")
    run_commands: bool = Field(default=False, description="Command execution mode")
    bck_username: Optional[str] = Field(None, description="Repository account from the CLI")

    @property
    def destination(self) -> str:
        """SSH destination in user@host form"""
        return f"{self.username}@{self.host}"
