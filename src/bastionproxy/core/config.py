"""Configuration types with environment variable support.

All settings can be configured via environment variables with the BASTIONPROXY_ prefix.
Example: BASTIONPROXY_IDLE_CLOSE=30m closes idle bastion connections after 30 minutes.
"""

from __future__ import annotations

import getpass
import re
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str | float | int) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or Go-style duration strings such as
    ``"4h"``, ``"1h30m"`` or ``"100ms"``.

    Raises:
        ValueError: If the string is not a valid duration
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    if not text:
        raise ValueError("Empty duration")

    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    return sign * total


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ProxyConfig(BaseSettings):
    """Process-wide proxy settings.

    Read once at startup and treated as read-only afterwards.

    Environment variables:
        BASTIONPROXY_LISTEN_HOST: SOCKS5 listen host (default: 127.0.0.1)
        BASTIONPROXY_LISTEN_PORT: SOCKS5 listen port (default: 5101)
        BASTIONPROXY_SSH_USER: Bastion SSH username (default: current user)
        BASTIONPROXY_SSH_KEY_FILE: Private key file (default: agent only)
        BASTIONPROXY_IDLE_CLOSE: Idle time before closing a bastion connection (default: 4h)
        BASTIONPROXY_MAX_RETRIES: Forward attempts per request (default: 2)
        BASTIONPROXY_STATUS_INTERVAL: Status report interval, 0 disables (default: 0)
        BASTIONPROXY_AGENT_PATH: SSH agent socket (default: $SSH_AUTH_SOCK)
        BASTIONPROXY_KNOWN_HOSTS: known_hosts file for host key checks (default: no checks)
        BASTIONPROXY_CONNECT_TIMEOUT: SSH dial timeout in seconds (default: none)
    """

    model_config = SettingsConfigDict(
        env_prefix="BASTIONPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    listen_host: str = Field(
        default="127.0.0.1",
        description="SOCKS5 listen host.",
    )
    listen_port: int = Field(
        default=5101,
        ge=0,
        le=65535,
        description="SOCKS5 listen port.",
    )
    ssh_user: str | None = Field(
        default=None,
        description="Bastion SSH username. Leave blank to use current user name.",
    )
    ssh_key_file: str | None = Field(
        default=None,
        description="Private key file used with bastion hosts. Leave unset to rely on SSH agent.",
    )
    idle_close: float = Field(
        default=4 * 3600.0,
        gt=0,
        description="Idle timeout in seconds before closing a bastion SSH connection.",
    )
    max_retries: int = Field(
        default=2,
        ge=1,
        description="Maximum attempts for a port forward through a bastion SSH connection.",
    )
    status_interval: float = Field(
        default=0.0,
        ge=0,
        description="Log connection statistics on this interval in seconds. 0 disables.",
    )
    agent_path: str | None = Field(
        default=None,
        description="SSH agent socket path. Falls back to SSH_AUTH_SOCK.",
    )
    known_hosts: str | None = Field(
        default=None,
        description="known_hosts file for bastion host key verification. None disables checks.",
    )
    connect_timeout: float | None = Field(
        default=None,
        description="Timeout in seconds for the SSH dial. None waits indefinitely.",
    )

    @field_validator("idle_close", "status_interval", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("connect_timeout", mode="before")
    @classmethod
    def _parse_connect_timeout(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return None
            return parse_duration(value)
        if value == 0:
            return None
        return value

    @field_validator("ssh_key_file", "agent_path", "known_hosts", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _default_user(self) -> ProxyConfig:
        if not self.ssh_user:
            self.ssh_user = getpass.getuser()
        return self

    @property
    def listen_addr(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration for display."""
        return {
            "listen": {
                "listen_host": self.listen_host,
                "listen_port": self.listen_port,
            },
            "ssh": {
                "ssh_user": self.ssh_user,
                "ssh_key_file": self.ssh_key_file,
                "agent_path": self.agent_path,
                "known_hosts": self.known_hosts,
                "connect_timeout": self.connect_timeout,
            },
            "tunnels": {
                "idle_close": self.idle_close,
                "max_retries": self.max_retries,
                "status_interval": self.status_interval,
            },
        }


_config: ProxyConfig | None = None


def get_config() -> ProxyConfig:
    """Get the global configuration instance.

    Returns a cached instance of ProxyConfig that reads from environment variables.
    The instance is created once and cached for the lifetime of the process.

    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = ProxyConfig()
    return _config


def set_config(config: ProxyConfig) -> None:
    """Install an explicitly built configuration (used by the CLI)."""
    global _config
    _config = config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    Useful for testing.
    """
    global _config
    _config = None
