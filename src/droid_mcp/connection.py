"""
Common state shared by stdio and HTTP connections.

A Connection owns its logs, call history and request correlator; nothing
outside the connection mutates those. Membership in the registry is owned
by ConnectionRegistry.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from droid_mcp.correlator import DEFAULT_TIMEOUT, RequestCorrelator
from droid_mcp.models import CallRecord, ServerConfig, ToolDescriptor
from droid_mcp.ring import DEFAULT_CAPACITY, RingBuffer

logger = logging.getLogger(__name__)

STATUS_LOG_LINES = 30
STATUS_HISTORY_ENTRIES = 20


@dataclass
class ProcessExited:
    """Published by a stdio connection when its process goes away."""
    name: str
    connection: "Connection"
    code: Optional[int]
    signal: Optional[str]


EventSink = Callable[[Any], None]


class Connection:
    """Base class for a live (or about-to-be-live) tool-server connection."""

    transport = "base"

    def __init__(
        self,
        config: ServerConfig,
        request_timeout: float = DEFAULT_TIMEOUT,
        log_capacity: int = DEFAULT_CAPACITY,
        history_capacity: int = DEFAULT_CAPACITY,
    ):
        self.config = config
        self.name = config.name
        self.connected = False
        self.server_info: Optional[Dict[str, Any]] = None
        self.tools: List[ToolDescriptor] = []
        self.logs: RingBuffer[str] = RingBuffer(log_capacity)
        self.call_history: RingBuffer[CallRecord] = RingBuffer(history_capacity)
        self.correlator = RequestCorrelator(self.call_history, timeout=request_timeout)
        self.created_at = time.time()

    def log(self, line: str):
        """Record one I/O line. Never raises."""
        self.logs.append(line)
        logger.debug(f"[{self.name}] {line}")

    @property
    def pending_count(self) -> int:
        return len(self.correlator.pending)

    async def start(self):
        """Bring the transport up (spawn, open, ...)."""
        raise NotImplementedError

    async def request(self, method: str, params: Any = None) -> Any:
        """Send one JSON-RPC request and return its result."""
        raise NotImplementedError

    async def stop(self):
        """Tear the transport down. Safe to call more than once."""
        raise NotImplementedError

    def mark_handshake_complete(self, server_info: Optional[Dict[str, Any]], tools: List[ToolDescriptor]):
        self.server_info = server_info
        self.tools = tools
        self.connected = True

    def transport_fields(self) -> Dict[str, Any]:
        return {}

    def snapshot(self, log_lines: int = STATUS_LOG_LINES, history_entries: int = STATUS_HISTORY_ENTRIES) -> Dict[str, Any]:
        """Read-only view of the connection for status queries."""
        status = {
            "name": self.name,
            "type": self.transport,
            "connected": self.connected,
            "server_info": dict(self.server_info) if isinstance(self.server_info, dict) else self.server_info,
            "tools": [tool.to_dict() for tool in self.tools],
            "logs": self.logs.tail(log_lines),
            "call_history": [record.to_dict() for record in self.call_history.tail(history_entries)],
            "pending_requests": self.pending_count,
        }
        status.update(self.transport_fields())
        return status
