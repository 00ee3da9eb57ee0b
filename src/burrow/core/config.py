"""Configuration types with environment variable support.

All settings can be configured via environment variables with the BURROW_ prefix.
Example: BURROW_REQUEST_TIMEOUT=60 gives public requests one minute to complete.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_SETTINGS = SettingsConfigDict(
    env_prefix="BURROW_",
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
)


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


class RelayConfig(BaseSettings):
    """Relay server configuration."""

    model_config = _SETTINGS

    host: str = Field(
        default="0.0.0.0",
        description="Interface the relay listens on.",
    )
    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for both public HTTP traffic and tunnel connections.",
    )
    base_domain: str = Field(
        default="localhost",
        description="Domain under which tunnels get their subdomains.",
    )
    public_scheme: str = Field(
        default="http",
        description="Scheme used when building public tunnel URLs.",
    )
    public_port: int | None = Field(
        default=None,
        description="Port appended to public tunnel URLs. None to omit it.",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds a public request waits for its tunnel response.",
    )
    heartbeat_interval: float = Field(
        default=30.0,
        description="WebSocket heartbeat interval for tunnel connections (seconds).",
    )
    max_message_size: int = Field(
        default=64 * 1024 * 1024,
        description="Largest tunnel frame accepted (bytes).",
    )
    max_body_size: int = Field(
        default=32 * 1024 * 1024,
        description="Largest public request body accepted (bytes).",
    )
    cleanup_interval: float = Field(
        default=60.0,
        description="Interval of the stale pending request sweep (seconds).",
    )


class ReconnectConfig(BaseSettings):
    """Reconnection behavior configuration.

    Delays grow linearly: attempt N waits ``base_delay * N`` seconds.
    """

    model_config = _SETTINGS

    max_attempts: int = Field(
        default=10,
        ge=0,
        description="Reconnection attempts before giving up.",
    )
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay unit between reconnection attempts (seconds).",
    )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt


class ClientConfig(BaseSettings):
    """Tunnel client configuration."""

    model_config = _SETTINGS

    server_url: str = Field(
        default="ws://localhost:8000",
        description="WebSocket URL of the relay.",
    )
    subdomain: str = Field(
        default="default",
        description="Subdomain to register.",
    )
    local_port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port of the local HTTP server.",
    )
    local_host: str = Field(
        default="localhost",
        description="Host of the local HTTP server.",
    )
    use_https: bool = Field(
        default=False,
        description="Talk HTTPS to the local server.",
    )
    local_url: str | None = Field(
        default=None,
        description="Full base URL of the local server, overrides host/port/scheme.",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify the local server's TLS certificate.",
    )
    connect_timeout: float = Field(
        default=10.0,
        description="Timeout for opening the relay connection (seconds).",
    )
    keepalive_interval: float = Field(
        default=20.0,
        description="WebSocket ping interval (seconds).",
    )
    local_timeout: float = Field(
        default=30.0,
        description="Timeout for a single request to the local server (seconds).",
    )

    @property
    def local_base_url(self) -> str:
        if self.local_url:
            return self.local_url.rstrip("/")
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.local_host}:{self.local_port}"


class BurrowConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.relay.request_timeout)
        print(config.reconnect.max_attempts)
    """

    model_config = _SETTINGS

    @property
    def relay(self) -> RelayConfig:
        """Get relay configuration."""
        return RelayConfig()

    @property
    def client(self) -> ClientConfig:
        """Get client configuration."""
        return ClientConfig()

    @property
    def reconnect(self) -> ReconnectConfig:
        """Get reconnection configuration."""
        return ReconnectConfig()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        client = self.client
        return {
            "relay": self.relay.model_dump(),
            "client": {
                **client.model_dump(exclude={"local_url"}),
                "local_url": client.local_base_url,
            },
            "reconnect": self.reconnect.model_dump(),
        }


_config: BurrowConfig | None = None


def get_config() -> BurrowConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = BurrowConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration."""
    global _config
    _config = None
