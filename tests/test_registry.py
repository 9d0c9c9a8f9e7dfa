#!/usr/bin/env python3
"""
Tests for the connection registry.

Stdio servers run the fake tool server with the current interpreter;
HTTP servers are served by httpx.MockTransport.
"""

import asyncio
import json
import socket
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from droid_mcp.registry import ConnectionRegistry
from droid_mcp.response import ErrorCodes

HTTP_URL = "http://tools.example.com/mcp"


def mock_mcp_server(fail_status=None):
    """httpx handler speaking just enough MCP for a handshake and a tool call."""
    def handler(request):
        if fail_status is not None:
            return httpx.Response(fail_status, text="unavailable")
        body = json.loads(request.content)
        method = body["method"]
        if method == "initialize":
            result = {"serverInfo": {"name": "remote", "version": "2.0.0"}}
        elif method == "tools/list":
            result = {"tools": [{"name": "search", "description": "Search", "inputSchema": {"type": "object"}}]}
        elif method == "tools/call":
            result = {"content": [{"type": "text", "text": body["params"]["arguments"].get("q", "")}]}
        else:
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}
            })
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return handler


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


class TestStdioLifecycle:

    @pytest.mark.asyncio
    async def test_connect_call_disconnect(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())

        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.connect("fake")
            assert result["success"] is True, result
            assert result["server_info"] == {"name": "fake-tool-server", "version": "0.0.1"}
            assert [tool["name"] for tool in result["tools"]] == ["echo", "fail", "slow", "crash"]

            status = registry.get_status("fake")["status"]
            assert status["connected"] is True
            assert isinstance(status["pid"], int)
            assert status["start_time"] is not None

            call = await registry.call_tool("fake", "echo", {"text": "hi"})
            assert call["success"] is True
            assert call["result"]["content"][0]["text"] == "hi"

            history = registry.get_status("fake")["status"]["call_history"]
            assert [entry["method"] for entry in history] == ["initialize", "tools/list", "tools/call"]
            assert [entry["id"] for entry in history] == [1, 2, 3]

            first = await registry.disconnect("fake")
            second = await registry.disconnect("fake")
            assert first == {"success": True, "error": None, "disconnected": True}
            assert second["success"] is True
            assert second["disconnected"] is False
            assert registry.get_status("fake")["status"] is None

    @pytest.mark.asyncio
    async def test_tool_error_is_reported(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())

        async with ConnectionRegistry(store, settings) as registry:
            await registry.connect("fake")
            result = await registry.call_tool("fake", "fail", {})

            assert result["success"] is False
            assert result["code"] == ErrorCodes.PROTOCOL_ERROR
            assert result["error"] == "Tool failed"
            assert registry.is_connected("fake")

    @pytest.mark.asyncio
    async def test_call_timeout(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())
        settings.request_timeout = 0.5

        async with ConnectionRegistry(store, settings) as registry:
            assert (await registry.connect("fake"))["success"]
            result = await registry.call_tool("fake", "slow", {})

            assert result["success"] is False
            assert result["code"] == ErrorCodes.TIMEOUT
            assert result["error"] == "Request timeout"
            last = registry.get_status("fake")["status"]["call_history"][-1]
            assert last["error"] == "Request timeout"
            assert registry.connection("fake").pending_count == 0

    @pytest.mark.asyncio
    async def test_handshake_timeout_leaves_nothing_registered(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry("silent"))
        settings.request_timeout = 0.5

        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.connect("fake")

            assert result["success"] is False
            assert result["code"] == ErrorCodes.TIMEOUT
            assert result["error"].startswith("Connection failed")
            assert registry.connection("fake") is None
            assert registry.get_status("fake")["status"] is None

    @pytest.mark.asyncio
    async def test_rejected_initialize(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry("reject_init"))

        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.connect("fake")

            assert result["success"] is False
            assert result["code"] == ErrorCodes.PROTOCOL_ERROR
            assert "Unsupported client" in result["error"]
            assert any(line.startswith("[recv] ") for line in result["logs"])
            assert registry.connection("fake") is None

    @pytest.mark.asyncio
    async def test_crash_removes_connection(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())

        async with ConnectionRegistry(store, settings) as registry:
            assert (await registry.connect("fake"))["success"]
            result = await registry.call_tool("fake", "crash", {})

            assert result["success"] is False
            assert result["code"] == ErrorCodes.PROCESS_FATAL
            assert await wait_until(lambda: registry.connection("fake") is None)
            assert (await registry.call_tool("fake", "echo", {}))["code"] == ErrorCodes.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_replaces_process(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())

        async with ConnectionRegistry(store, settings) as registry:
            await registry.connect("fake")
            first_pid = registry.get_status("fake")["status"]["pid"]

            assert (await registry.connect("fake"))["success"]
            await registry.drain_events()

            # The first process's exit must not evict its replacement
            assert registry.is_connected("fake")
            assert registry.get_status("fake")["status"]["pid"] != first_pid

    @pytest.mark.asyncio
    async def test_port_in_use_does_not_spawn(self, store, settings, fake_server_entry):
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        port = holder.getsockname()[1]
        store.add("fake", fake_server_entry(PORT=str(port)))

        try:
            with patch("droid_mcp.stdio_transport.spawn_process", new_callable=AsyncMock) as mock_spawn:
                async with ConnectionRegistry(store, settings) as registry:
                    result = await registry.connect("fake")
        finally:
            holder.close()

        mock_spawn.assert_not_called()
        assert result["success"] is False
        assert result["code"] == ErrorCodes.PORT_IN_USE
        assert result["port"] == port
        assert str(port) in result["error"]


class TestConfigGuards:

    @pytest.mark.asyncio
    async def test_unknown_server(self, store, settings):
        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.connect("missing")
        assert result["success"] is False
        assert result["code"] == ErrorCodes.NOT_FOUND

    @pytest.mark.asyncio
    async def test_disabled_server(self, store, settings, fake_server_entry):
        store.add("fake", {**fake_server_entry(), "disabled": True})

        with patch("droid_mcp.stdio_transport.spawn_process", new_callable=AsyncMock) as mock_spawn:
            async with ConnectionRegistry(store, settings) as registry:
                result = await registry.connect("fake")

        mock_spawn.assert_not_called()
        assert result["code"] == ErrorCodes.CONFIG_ERROR
        assert "disabled" in result["error"]

    @pytest.mark.asyncio
    async def test_call_on_unconnected(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())
        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.call_tool("fake", "echo", {})
        assert result["code"] == ErrorCodes.NOT_CONNECTED


class TestHttpServers:

    @pytest.mark.asyncio
    async def test_connect_and_call(self, store, settings):
        store.add("remote", {"type": "http", "url": HTTP_URL})
        transport = httpx.MockTransport(mock_mcp_server())

        async with ConnectionRegistry(store, settings, http_transport=transport) as registry:
            result = await registry.connect("remote")
            assert result["success"] is True
            assert result["server_info"]["name"] == "remote"
            assert result["tools"][0]["name"] == "search"

            call = await registry.call_tool("remote", "search", {"q": "mcp"})
            assert call["result"]["content"][0]["text"] == "mcp"

            status = registry.get_status("remote")["status"]
            assert status["connected"] is True
            assert status["url"] == HTTP_URL
            assert status["last_checked_at"] is not None

    @pytest.mark.asyncio
    async def test_unreachable_server_is_recorded(self, store, settings):
        store.add("remote", {"type": "http", "url": HTTP_URL})
        transport = httpx.MockTransport(mock_mcp_server(fail_status=500))

        async with ConnectionRegistry(store, settings, http_transport=transport) as registry:
            result = await registry.connect("remote")

            assert result["success"] is False
            assert result["connected"] is False
            assert result["last_checked_at"] is not None
            assert registry.connection("remote") is None

            status = registry.get_status("remote")["status"]
            assert status["connected"] is False
            assert status["last_checked_at"] is not None

            entry = registry.list()["servers"][0]
            assert entry["connected"] is False
            assert entry["last_checked_at"] is not None


class TestBulkAndListing:

    @pytest.mark.asyncio
    async def test_connect_all_aggregates(self, store, settings, fake_server_entry):
        store.add("good", fake_server_entry())
        store.add("off", {**fake_server_entry(), "disabled": True})
        store.add("missing-binary", {"type": "stdio", "command": "/nonexistent/droid-mcp-server"})

        async with ConnectionRegistry(store, settings) as registry:
            result = await registry.connect_all()

            assert result["success"] is False
            assert result["code"] == ErrorCodes.CONNECT_ERROR
            assert result["connected"] == ["good"]
            assert result["skipped"] == ["off"]
            assert [f["name"] for f in result["failures"]] == ["missing-binary"]
            assert "missing-binary" in result["error"]
            assert registry.connected_names == ["good"]

            again = await registry.connect_all()
            assert "good" in again["skipped"]

    @pytest.mark.asyncio
    async def test_list_merges_config_and_state(self, config_path, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())
        document = store.load()
        document["mcpServers"]["broken"] = {"type": "stdio"}
        store.save(document)

        async with ConnectionRegistry(store, settings) as registry:
            await registry.connect("fake")
            result = registry.list()

        assert result["success"] is True
        assert result["config_path"] == str(config_path)
        by_name = {entry["name"]: entry for entry in result["servers"]}
        assert by_name["fake"]["connected"] is True
        assert by_name["fake"]["valid"] is True
        assert isinstance(by_name["fake"]["pid"], int)
        assert len(by_name["fake"]["tools"]) == 4
        assert by_name["broken"]["valid"] is False
        assert "no command" in by_name["broken"]["validation_error"]
        assert by_name["broken"]["connected"] is False

    @pytest.mark.asyncio
    async def test_remove_disconnects_first(self, store, settings, fake_server_entry):
        store.add("fake", fake_server_entry())

        async with ConnectionRegistry(store, settings) as registry:
            await registry.connect("fake")
            connection = registry.connection("fake")

            result = await registry.remove_server("fake")

            assert result["success"] is True
            assert not connection.running
            assert registry.connection("fake") is None
            assert store.names() == []
            assert "fake" not in registry._locks

    @pytest.mark.asyncio
    async def test_disconnect_unknown_name_leaves_no_lock(self, store, settings):
        async with ConnectionRegistry(store, settings) as registry:
            for name in ("ghost-1", "ghost-2", "ghost-3"):
                result = await registry.disconnect(name)
                assert result["success"] is True
                assert result["disconnected"] is False

            assert dict(registry._locks) == {}

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, store, settings, fake_server_entry):
        store.add("a", fake_server_entry())
        store.add("b", fake_server_entry())

        registry = ConnectionRegistry(store, settings)
        await registry.connect("a")
        await registry.connect("b")
        connections = [registry.connection("a"), registry.connection("b")]

        await registry.shutdown()

        assert registry.connected_names == []
        assert all(not connection.running for connection in connections)
