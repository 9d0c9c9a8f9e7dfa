"""
Connection registry: the single owner of which tool servers are live.

Maps server name -> live Connection and drives the connect handshake::

    Disconnected -> Connecting -> Handshaking -> Connected -> Disconnected

A connection is only inserted after ``initialize`` and ``tools/list`` both
succeed. Transports report process exits as ProcessExited events on a
queue; a pump task on the registry's event loop drains it and drops the
matching connection.

Every public coroutine returns a result envelope (see droid_mcp.response)
instead of raising.

Usage:
    async with ConnectionRegistry(ConfigStore()) as registry:
        result = await registry.connect("echo")
        if result["success"]:
            await registry.call_tool("echo", "echo", {"text": "hi"})
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

import httpx

from droid_mcp.config_store import ConfigStore
from droid_mcp.connection import Connection, ProcessExited
from droid_mcp.env_config import Settings
from droid_mcp.errors import ConfigError, ToolServerError
from droid_mcp.http_transport import HttpConnection
from droid_mcp.models import HTTP, STDIO, ServerConfig, ToolDescriptor
from droid_mcp.port_guard import check_available, required_port
from droid_mcp.response import ErrorCodes, ResponseEnvelope
from droid_mcp.stdio_transport import StdioConnection
from droid_mcp.update_checker import check_for_update

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "droid-resource-manager", "version": "1.0.0"}

LIST_LOG_LINES = 20
LIST_HISTORY_ENTRIES = 10


class ConnectionRegistry:
    """Launches, supervises and queries tool-server connections."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        settings: Optional[Settings] = None,
        request_timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or ConfigStore(self.settings.config_path)
        self.request_timeout = request_timeout if request_timeout is not None else self.settings.request_timeout
        self.http_transport = http_transport

        self._connections: Dict[str, Connection] = {}
        self._probes: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._events: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ConnectionRegistry":
        self._ensure_event_pump()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    # ------------------------------------------------------------------ events

    def _ensure_event_pump(self):
        if self._events is None:
            self._events = asyncio.Queue()
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump_events())

    def _publish(self, event: Any):
        if self._events is not None:
            self._events.put_nowait(event)

    async def _pump_events(self):
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, ProcessExited):
                    self._on_process_exited(event)
            except Exception as e:
                logger.error(f"Failed to handle {type(event).__name__}: {e}", exc_info=True)
            finally:
                self._events.task_done()

    def _on_process_exited(self, event: ProcessExited):
        # Identity check: a late exit of a replaced process must not evict its successor
        if self._connections.get(event.name) is event.connection:
            del self._connections[event.name]
            logger.info(f"Removed {event.name} after process exit (code={event.code}, signal={event.signal})")

    async def drain_events(self):
        """Wait until every published event has been handled."""
        if self._events is not None:
            await self._events.join()

    # ------------------------------------------------------------------ helpers

    def _create_connection(self, config: ServerConfig) -> Connection:
        common = {
            "request_timeout": self.request_timeout,
            "log_capacity": self.settings.log_capacity,
            "history_capacity": self.settings.history_capacity,
        }
        if config.type == STDIO:
            return StdioConnection(
                config,
                on_event=self._publish,
                stop_grace_seconds=self.settings.stop_grace_seconds,
                **common,
            )
        return HttpConnection(config, http_transport=self.http_transport, **common)

    async def _handshake(self, connection: Connection):
        init_result = await connection.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": dict(CLIENT_INFO),
        })
        server_info = init_result.get("serverInfo") if isinstance(init_result, dict) else None

        tools_result = await connection.request("tools/list", {})
        raw_tools = tools_result.get("tools") if isinstance(tools_result, dict) else None
        tools = [ToolDescriptor.from_dict(t) for t in (raw_tools or []) if isinstance(t, dict)]

        connection.mark_handshake_complete(server_info, tools)

    def _record_probe(self, connection: HttpConnection):
        self._probes[connection.name] = {
            "connected": connection.connected,
            "last_checked_at": connection.last_checked_at,
            "last_http_status": connection.last_http_status,
        }

    async def _teardown(self, name: str) -> bool:
        connection = self._connections.pop(name, None)
        if connection is None:
            return False
        await connection.stop()
        logger.info(f"Disconnected {name}")
        return True

    def is_connected(self, name: str) -> bool:
        connection = self._connections.get(name)
        return connection is not None and connection.connected

    def connection(self, name: str) -> Optional[Connection]:
        return self._connections.get(name)

    @property
    def connected_names(self) -> List[str]:
        return list(self._connections)

    # ------------------------------------------------------------------ lifecycle

    async def connect(self, name: str) -> dict:
        """
        Start (or re-start) a server and perform the handshake.

        Returns:
            dict: ``{"success": True, "server_info": ..., "tools": [...]}`` or a
            failure envelope; a failure never leaves a registered connection.
        """
        self._ensure_event_pump()
        try:
            config = self.store.get(name)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)

        if config.disabled:
            return ResponseEnvelope.error(ErrorCodes.CONFIG_ERROR, f'Server "{name}" is disabled')

        async with self._locks[name]:
            try:
                return await self._connect_locked(name, config)
            except Exception as e:
                logger.error(f"Unexpected error connecting {name}: {e}", exc_info=True)
                return ResponseEnvelope.error(ErrorCodes.UNEXPECTED_EXCEPTION, f"Connection failed: {e}")

    async def _connect_locked(self, name: str, config: ServerConfig) -> dict:
        if config.type == STDIO:
            if name in self._connections:
                await self._teardown(name)

            port = required_port(name, config)
            if port is not None and not check_available(port):
                logger.warning(f"Not starting {name}: port {port} is already in use")
                return ResponseEnvelope.error(
                    ErrorCodes.PORT_IN_USE,
                    f"Port {port} is already in use; close the program holding it or change the port",
                    port=port,
                )

        connection = self._create_connection(config)
        logger.info(f"Connecting {name} ({config.type})")
        try:
            await connection.start()
            await self._handshake(connection)
        except ToolServerError as e:
            await connection.stop()
            logger.warning(f"Connection to {name} failed: {e}")
            extra: Dict[str, Any] = {}
            if isinstance(connection, HttpConnection):
                # Most recent probe says unreachable; drop any older live connection
                await self._teardown(name)
                self._record_probe(connection)
                extra = dict(self._probes[name])
            if isinstance(connection, StdioConnection):
                extra = {"logs": connection.logs.tail(LIST_LOG_LINES)}
            return ResponseEnvelope.error(e.code, f"Connection failed: {e}", **extra)
        except BaseException:
            await connection.stop()
            raise

        previous = self._connections.get(name)
        if previous is not None and previous is not connection:
            await previous.stop()
        self._connections[name] = connection
        self._probes.pop(name, None)

        logger.info(f"Connected {name}: {len(connection.tools)} tools")
        return ResponseEnvelope.success(
            server_info=connection.server_info,
            tools=[tool.to_dict() for tool in connection.tools],
        )

    async def disconnect(self, name: str) -> dict:
        """
        Stop a server's connection.

        Idempotent: disconnecting something that is not connected succeeds
        with ``disconnected=False``.
        """
        if name not in self._connections and name not in self._locks:
            # Never connected here; no lock entry for arbitrary names
            return ResponseEnvelope.success(disconnected=False, message=f'Server "{name}" was not connected')

        async with self._locks[name]:
            try:
                disconnected = await self._teardown(name)
            except Exception as e:
                logger.error(f"Failed to disconnect {name}: {e}", exc_info=True)
                return ResponseEnvelope.error(ErrorCodes.UNEXPECTED_EXCEPTION, f"Disconnect failed: {e}")
        self._probes.pop(name, None)
        if not disconnected:
            return ResponseEnvelope.success(disconnected=False, message=f'Server "{name}" was not connected')
        return ResponseEnvelope.success(disconnected=True)

    async def call_tool(self, name: str, tool_name: str, arguments: Any = None) -> dict:
        """Forward a ``tools/call`` to a connected server."""
        connection = self._connections.get(name)
        # A registered HTTP server stays callable after a failed call; the next call re-probes it
        if connection is None or (not connection.connected and not isinstance(connection, HttpConnection)):
            return ResponseEnvelope.error(ErrorCodes.NOT_CONNECTED, f'Server "{name}" is not connected')

        try:
            result = await connection.request("tools/call", {
                "name": tool_name,
                "arguments": arguments if arguments is not None else {},
            })
        except ToolServerError as e:
            logger.warning(f"{name}.{tool_name} failed: {e}")
            return ResponseEnvelope.from_exception(e)
        except Exception as e:
            logger.error(f"Unexpected error calling {name}.{tool_name}: {e}", exc_info=True)
            return ResponseEnvelope.error(ErrorCodes.UNEXPECTED_EXCEPTION, str(e))

        return ResponseEnvelope.success(result=result)

    async def connect_all(self) -> dict:
        """
        Connect every enabled server that is not already connected.

        Servers are attempted one after another; failures are collected
        and reported together instead of aborting the batch.
        """
        try:
            names = self.store.names()
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)

        connected: List[str] = []
        skipped: List[str] = []
        failures: List[Dict[str, str]] = []

        for name in names:
            try:
                config = self.store.get(name)
            except ConfigError as e:
                failures.append({"name": name, "error": str(e)})
                continue
            if config.disabled or self.is_connected(name):
                skipped.append(name)
                continue

            result = await self.connect(name)
            if result["success"]:
                connected.append(name)
            else:
                failures.append({"name": name, "error": result["error"]})

        summary = {
            "connected": connected,
            "skipped": skipped,
            "failures": failures,
            "connected_count": len(connected),
            "failure_count": len(failures),
        }
        if failures:
            details = "; ".join(f"{f['name']}: {f['error']}" for f in failures)
            return ResponseEnvelope.error(ErrorCodes.CONNECT_ERROR, f"Some servers failed to start: {details}", **summary)
        return ResponseEnvelope.success(**summary)

    async def shutdown(self):
        """Disconnect everything and stop the event pump."""
        for name in list(self._connections):
            result = await self.disconnect(name)
            if not result["success"]:
                logger.warning(f"Shutdown: {result['error']}")

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    # ------------------------------------------------------------------ queries

    def get_status(self, name: str) -> dict:
        """
        Snapshot of one server's connection.

        ``status`` is None when the server is configured but has never been
        connected (or was disconnected).
        """
        connection = self._connections.get(name)
        if connection is not None:
            return ResponseEnvelope.success(status=connection.snapshot())

        try:
            config = self.store.get(name)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)

        probe = self._probes.get(name)
        if probe is not None and config.type == HTTP:
            return ResponseEnvelope.success(status={"name": name, "type": HTTP, **probe})
        return ResponseEnvelope.success(status=None)

    def list(self) -> dict:
        """Every configured server merged with its live connection state."""
        try:
            servers = self.store.servers()
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e, config_path=str(self.store.path), servers=[])

        entries = []
        for name, raw in servers.items():
            raw = raw if isinstance(raw, dict) else {}
            error = self.store.validation_error(name, raw)
            entry = {
                "name": name,
                "type": raw.get("type"),
                "disabled": bool(raw.get("disabled", False)),
                "command": raw.get("command"),
                "args": raw.get("args") or [],
                "env": raw.get("env") or {},
                "url": raw.get("url"),
                "headers": raw.get("headers") or {},
                "valid": error is None,
                "validation_error": error,
                "connected": False,
                "pid": None,
                "start_time": None,
                "last_checked_at": None,
                "server_info": None,
                "tools": [],
                "logs": [],
                "call_history": [],
            }

            connection = self._connections.get(name)
            if connection is not None:
                snapshot = connection.snapshot(log_lines=LIST_LOG_LINES, history_entries=LIST_HISTORY_ENTRIES)
                for key in ("connected", "server_info", "tools", "logs", "call_history",
                            "pid", "start_time", "last_checked_at"):
                    if key in snapshot:
                        entry[key] = snapshot[key]
            elif name in self._probes:
                entry["connected"] = self._probes[name]["connected"]
                entry["last_checked_at"] = self._probes[name]["last_checked_at"]

            entries.append(entry)

        return ResponseEnvelope.success(config_path=str(self.store.path), servers=entries)

    # ------------------------------------------------------------------ config

    def add_server(self, name: str, entry: Dict[str, Any]) -> dict:
        try:
            self.store.add(name, entry)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        return ResponseEnvelope.success(name=name)

    def update_server(self, name: str, changes: Dict[str, Any]) -> dict:
        try:
            self.store.update(name, changes)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        return ResponseEnvelope.success(name=name)

    async def remove_server(self, name: str) -> dict:
        try:
            self.store.raw(name)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)

        if name in self._connections:
            await self.disconnect(name)
        self._probes.pop(name, None)
        lock = self._locks.get(name)
        if lock is not None and not lock.locked():
            del self._locks[name]

        try:
            self.store.remove(name)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        return ResponseEnvelope.success(name=name)

    def enable_server(self, name: str) -> dict:
        try:
            self.store.set_disabled(name, False)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        return ResponseEnvelope.success(name=name, disabled=False)

    def disable_server(self, name: str) -> dict:
        try:
            self.store.set_disabled(name, True)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        return ResponseEnvelope.success(name=name, disabled=True)

    async def check_update(self, name: str) -> dict:
        try:
            config = self.store.get(name)
        except ConfigError as e:
            return ResponseEnvelope.from_exception(e)
        try:
            return await check_for_update(config, registry_url=self.settings.registry_url)
        except Exception as e:
            logger.error(f"Update check for {name} failed: {e}", exc_info=True)
            return ResponseEnvelope.error(ErrorCodes.UNEXPECTED_EXCEPTION, str(e))
