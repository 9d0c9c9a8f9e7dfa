"""
Server registry persistence.

The registry lives in one JSON file shaped like::

    { "mcpServers": { "<name>": { "type": "stdio", ... } } }

Every mutation rewrites the whole file atomically (temp file + rename).
Entries are kept as raw dicts so unknown keys, key order and even invalid
entries survive a rewrite untouched; validation happens when an entry is
read through get().

Usage:
    from droid_mcp.config_store import ConfigStore

    store = ConfigStore()                      # ~/.factory/mcp.json
    store.add("echo", {"type": "stdio", "command": "echo-server", "args": []})
    config = store.get("echo")
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from droid_mcp.env_config import DEFAULT_CONFIG_PATH
from droid_mcp.errors import ConfigError
from droid_mcp.models import ServerConfig, parse_server_config
from droid_mcp.response import ErrorCodes

logger = logging.getLogger(__name__)

SERVERS_KEY = "mcpServers"


class ConfigStore:
    """Load and save the name -> ServerConfig registry."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH

    def load(self) -> Dict[str, Any]:
        """
        Load the configuration document.

        Supports both configuration layouts:
        - Nested: { "mcpServers": { "server-name": {...} } }
        - Flat:   { "server-name": {...} }

        Returns:
            dict: Document with an ``mcpServers`` mapping

        Raises:
            ConfigError: If the file exists but is not valid JSON
        """
        if not self.path.exists():
            return {SERVERS_KEY: {}}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse MCP configuration {self.path}: {e}")
            raise ConfigError(f"Invalid JSON in {self.path}: {e}")
        except OSError as e:
            logger.error(f"Failed to read MCP configuration {self.path}: {e}")
            raise ConfigError(f"Cannot read {self.path}: {e}")

        if not isinstance(document, dict):
            raise ConfigError(f"{self.path} must contain a JSON object")

        if SERVERS_KEY not in document:
            # Flat format; wrap for consistency
            document = {SERVERS_KEY: document}
        elif not isinstance(document[SERVERS_KEY], dict):
            raise ConfigError(f'"{SERVERS_KEY}" in {self.path} must be an object')

        return document

    def save(self, document: Dict[str, Any]):
        """Rewrite the whole file atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, ensure_ascii=False)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(f"Failed to save MCP configuration {self.path}: {e}")
            raise ConfigError(f"Cannot write {self.path}: {e}")

        logger.info(f"Saved MCP configuration to {self.path}")

    def servers(self) -> Dict[str, Any]:
        """Raw server entries, in file order."""
        return self.load()[SERVERS_KEY]

    def names(self) -> List[str]:
        return list(self.servers().keys())

    def raw(self, name: str) -> Dict[str, Any]:
        servers = self.servers()
        if name not in servers:
            raise ConfigError(f'Server "{name}" does not exist', code=ErrorCodes.NOT_FOUND)
        return copy.deepcopy(servers[name])

    def get(self, name: str) -> ServerConfig:
        """
        Look up and validate one server.

        Raises:
            ConfigError: Not found, or the entry is inconsistent with its type
        """
        return parse_server_config(name, self.raw(name))

    def validation_error(self, name: str, raw: Any) -> Optional[str]:
        try:
            parse_server_config(name, raw)
        except ConfigError as e:
            return str(e)
        return None

    def add(self, name: str, entry: Dict[str, Any]) -> ServerConfig:
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Server name must be a non-empty string")

        document = self.load()
        if name in document[SERVERS_KEY]:
            raise ConfigError(f'Server "{name}" already exists', code=ErrorCodes.ALREADY_EXISTS)

        config = parse_server_config(name, entry)
        document[SERVERS_KEY][name] = copy.deepcopy(entry)
        self.save(document)
        logger.info(f"Added server {name} ({config.type})")
        return config

    def update(self, name: str, changes: Dict[str, Any]) -> ServerConfig:
        """Shallow-merge ``changes`` into an existing entry."""
        if not isinstance(changes, dict):
            raise ConfigError("Server changes must be an object")
        if "name" in changes and changes["name"] != name:
            raise ConfigError(f'Server "{name}" cannot be renamed')

        document = self.load()
        servers = document[SERVERS_KEY]
        if name not in servers:
            raise ConfigError(f'Server "{name}" does not exist', code=ErrorCodes.NOT_FOUND)

        merged = {**servers[name], **{k: v for k, v in changes.items() if k != "name"}}
        config = parse_server_config(name, merged)
        servers[name] = merged
        self.save(document)
        logger.info(f"Updated server {name}")
        return config

    def remove(self, name: str):
        document = self.load()
        if name not in document[SERVERS_KEY]:
            raise ConfigError(f'Server "{name}" does not exist', code=ErrorCodes.NOT_FOUND)
        del document[SERVERS_KEY][name]
        self.save(document)
        logger.info(f"Removed server {name}")

    def set_disabled(self, name: str, disabled: bool):
        document = self.load()
        servers = document[SERVERS_KEY]
        if name not in servers:
            raise ConfigError(f'Server "{name}" does not exist', code=ErrorCodes.NOT_FOUND)
        if not isinstance(servers[name], dict):
            raise ConfigError(f'Server "{name}": entry must be an object')
        servers[name]["disabled"] = disabled
        self.save(document)
        logger.info(f"{'Disabled' if disabled else 'Enabled'} server {name}")
