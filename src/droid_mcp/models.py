"""
Data model for tool-server configuration and connection records.

Server configs are a tagged variant on the required ``type`` field:

    {"type": "stdio", "command": "npx", "args": ["-y", "pkg"], "env": {...}}
    {"type": "http", "url": "https://example.com/mcp", "headers": {...}}

Anything inconsistent with its declared type is rejected with ConfigError
when the entry is parsed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from droid_mcp.errors import ConfigError

STDIO = "stdio"
HTTP = "http"
SERVER_TYPES = (STDIO, HTTP)


@dataclass
class StdioServerConfig:
    """A tool server reached by spawning a subprocess."""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    type: str = field(default=STDIO, init=False)


@dataclass
class HttpServerConfig:
    """A tool server reached with one HTTP POST per RPC."""
    name: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    type: str = field(default=HTTP, init=False)


ServerConfig = Union[StdioServerConfig, HttpServerConfig]


def _string_map(name: str, key: str, value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f'Server "{name}": "{key}" must be an object')
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def parse_server_config(name: str, raw: Any) -> ServerConfig:
    """
    Validate a raw config entry and build the matching ServerConfig.

    Args:
        name: Server name (the key in ``mcpServers``)
        raw: Entry as loaded from JSON

    Returns:
        StdioServerConfig or HttpServerConfig

    Raises:
        ConfigError: If the entry is inconsistent with its declared type
    """
    if not isinstance(raw, dict):
        raise ConfigError(f'Server "{name}": entry must be an object')

    server_type = raw.get("type")
    if server_type not in SERVER_TYPES:
        raise ConfigError(
            f'Server "{name}": "type" must be one of {", ".join(SERVER_TYPES)} (got {server_type!r})'
        )

    disabled = raw.get("disabled", False)
    if not isinstance(disabled, bool):
        raise ConfigError(f'Server "{name}": "disabled" must be a boolean')

    if server_type == STDIO:
        command = raw.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(f'Server "{name}" has no command configured')
        args = raw.get("args") or []
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ConfigError(f'Server "{name}": "args" must be a list of strings')
        return StdioServerConfig(
            name=name,
            command=command,
            args=list(args),
            env=_string_map(name, "env", raw.get("env")),
            disabled=disabled,
        )

    url = raw.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ConfigError(f'Server "{name}" has no url configured')
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f'Server "{name}": url must start with http:// or https://')
    return HttpServerConfig(
        name=name,
        url=url,
        headers=_string_map(name, "headers", raw.get("headers")),
        disabled=disabled,
    )


@dataclass
class ToolDescriptor:
    """A tool advertised by a server in its tools/list result."""
    name: str
    description: str = ""
    input_schema: Any = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ToolDescriptor":
        return cls(
            name=str(raw.get("name", "")),
            description=raw.get("description") or "",
            input_schema=raw.get("inputSchema"),
        )

    def to_dict(self) -> Dict[str, Any]:
        # Wire form; inputSchema is passed through untouched
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class CallRecord:
    """One JSON-RPC request as seen in a connection's call history."""
    id: int
    method: str
    params: Any
    start_time: float = field(default_factory=time.time)
    result: Any = None
    error: Optional[str] = None
    end_time: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return round((self.end_time - self.start_time) * 1000, 2)

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    def finish(self, result: Any = None, error: Optional[str] = None):
        self.result = result
        self.error = error
        self.end_time = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "params": self.params,
            "result": self.result,
            "error": self.error,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
        }


@dataclass
class PendingRequest:
    """A sent request waiting for either its response or its timeout."""
    id: int
    method: str
    params: Any
    record: CallRecord
    future: asyncio.Future
    start_time: float = field(default_factory=time.time)
    timer: Optional[asyncio.TimerHandle] = None
