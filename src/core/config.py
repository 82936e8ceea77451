"""
Bridge configuration.

Supports configuration via:
- Environment variables
- Configuration file (~/.config/mcp-sse-bridge/config.json)
- Command line overrides (see sse_server.py)

The configuration is read once at startup and is immutable afterwards.

Environment Variables:
    MCP_BRIDGE_API_BASE_URL: Base URL of the API used by the session provider
    MCP_BRIDGE_API_CLIENT_ID: OAuth client id
    MCP_BRIDGE_API_CLIENT_SECRET: OAuth client secret
    MCP_BRIDGE_CONNECTION_STRING: Optional connection string passed to tools
    MCP_BRIDGE_HOST: Host to bind to (default: 127.0.0.1)
    MCP_BRIDGE_PORT: Port to listen on (default: 6005)
    MCP_BRIDGE_TELEMETRY: enabled | disabled (default: enabled)
    MCP_BRIDGE_API_KEY: Require this X-API-Key on /sse and /messages
    MCP_BRIDGE_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "mcp-sse-bridge"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_API_BASE_URL = "https://cloud.mongodb.com/"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6005

ENV_PREFIX = "MCP_BRIDGE_"

TelemetryMode = Literal["enabled", "disabled"]

# env suffix -> (field name, converter)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "API_BASE_URL": ("api_base_url", str),
    "API_CLIENT_ID": ("api_client_id", str),
    "API_CLIENT_SECRET": ("api_client_secret", str),
    "CONNECTION_STRING": ("connection_string", str),
    "HOST": ("host", str),
    "PORT": ("port", int),
    "TELEMETRY": ("telemetry", str),
    "API_KEY": ("api_key", str),
    "LOG_LEVEL": ("log_level", str),
}


def redact_url(url: str | None) -> str | None:
    """Hide the password component of a URL-like connection string."""
    if not url:
        return url
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":****@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


@dataclass(frozen=True)
class BridgeConfig:
    """Process-wide configuration for the SSE bridge."""

    # API session settings
    api_base_url: str = DEFAULT_API_BASE_URL
    api_client_id: str | None = None
    api_client_secret: str | None = None
    connection_string: str | None = None

    # HTTP listener
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    allow_network: bool = False
    api_key: str | None = None

    # Shared settings
    telemetry: TelemetryMode = "enabled"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.telemetry not in ("enabled", "disabled"):
            logger.warning(f"Invalid telemetry mode '{self.telemetry}', defaulting to enabled")
            object.__setattr__(self, "telemetry", "enabled")
        if not self.api_base_url.endswith("/"):
            object.__setattr__(self, "api_base_url", self.api_base_url + "/")

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.api_client_id and self.api_client_secret)

    @classmethod
    def _env_values(cls) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for suffix, (name, convert) in _ENV_FIELDS.items():
            raw = os.environ.get(ENV_PREFIX + suffix)
            if not raw:
                continue
            try:
                values[name] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {ENV_PREFIX}{suffix}: {raw!r}")
        if "telemetry" in values:
            values["telemetry"] = values["telemetry"].lower()
        return values

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Create configuration from environment variables."""
        return cls(**cls._env_values())

    @classmethod
    def _file_values(cls, config_path: Path) -> dict[str, Any]:
        if not config_path.exists():
            logger.debug(f"Config file not found: {config_path}")
            return {}

        try:
            with open(config_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
            return {}

        known = {field.name for field in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {config_path}: {', '.join(unknown)}")
        return {key: value for key, value in data.items() if key in known and value is not None}

    @classmethod
    def from_file(cls, config_path: Path | None = None) -> BridgeConfig:
        """Load configuration from JSON file."""
        return cls(**cls._file_values(config_path or DEFAULT_CONFIG_PATH))

    @classmethod
    def load(cls, config_path: Path | None = None) -> BridgeConfig:
        """Load configuration with precedence: env > file > defaults."""
        values = cls._file_values(config_path or DEFAULT_CONFIG_PATH)
        values.update(cls._env_values())
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> BridgeConfig:
        """Return a copy with the given non-None values replaced."""
        return dataclasses.replace(
            self, **{key: value for key, value in overrides.items() if value is not None}
        )

    def describe(self) -> dict[str, Any]:
        """Summary safe for logging; secrets are masked."""
        return {
            "api_base_url": self.api_base_url,
            "api_client_id": self.api_client_id,
            "api_client_secret": "****" if self.api_client_secret else None,
            "connection_string": redact_url(self.connection_string),
            "host": self.host,
            "port": self.port,
            "telemetry": self.telemetry,
            "api_key": "enabled" if self.api_key else "disabled",
        }
