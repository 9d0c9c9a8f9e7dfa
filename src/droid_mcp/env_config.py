"""
Environment configuration for droid-mcp.

Loads environment variables from:
1. ~/.factory/.env file (if it exists)
2. System environment variables (which override .env values)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Path to the per-user .env file
ENV_FILE = Path.home() / ".factory" / ".env"

DEFAULT_CONFIG_PATH = Path.home() / ".factory" / "mcp.json"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"


def load_env_file(env_file: Path = ENV_FILE):
    """Load environment variables from .env file if it exists."""
    if not env_file.exists():
        return

    with open(env_file) as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            # Parse KEY=VALUE
            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()

                # Only set if not already in environment
                if key not in os.environ:
                    os.environ[key] = value


# Load .env file when module is imported
load_env_file()


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def _get_float(key: str, default: float) -> float:
    value = get_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")


def _get_int(key: str, default: int) -> int:
    value = get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {value!r}")


@dataclass
class Settings:
    """Runtime settings for the connection manager."""
    config_path: Path = DEFAULT_CONFIG_PATH
    request_timeout: float = 30.0
    log_capacity: int = 100
    history_capacity: int = 100
    registry_url: str = DEFAULT_REGISTRY_URL
    stop_grace_seconds: float = 5.0
    api_host: str = "127.0.0.1"
    api_port: int = 5860

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from DROID_MCP_* environment variables."""
        config_path = get_env("DROID_MCP_CONFIG")
        return cls(
            config_path=Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH,
            request_timeout=_get_float("DROID_MCP_REQUEST_TIMEOUT", 30.0),
            log_capacity=_get_int("DROID_MCP_LOG_CAPACITY", 100),
            history_capacity=_get_int("DROID_MCP_HISTORY_CAPACITY", 100),
            registry_url=get_env("DROID_MCP_REGISTRY_URL", DEFAULT_REGISTRY_URL).rstrip("/"),
            stop_grace_seconds=_get_float("DROID_MCP_STOP_GRACE", 5.0),
            api_host=get_env("DROID_MCP_API_HOST", "127.0.0.1"),
            api_port=_get_int("DROID_MCP_API_PORT", 5860),
        )
