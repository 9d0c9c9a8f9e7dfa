#!/usr/bin/env python3
"""Tests for the HTTP transport, using httpx.MockTransport as the server."""

import asyncio
import json

import httpx
import pytest

from droid_mcp.errors import ConnectError, ConnectionClosedError, ProtocolError, RequestTimeoutError
from droid_mcp.http_transport import HttpConnection
from droid_mcp.models import HttpServerConfig

URL = "http://tools.example.com/mcp"


def make_connection(handler, headers=None, request_timeout=5.0):
    config = HttpServerConfig(name="remote", url=URL, headers=headers or {})
    return HttpConnection(config, http_transport=httpx.MockTransport(handler), request_timeout=request_timeout)


def echo_result(request):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"method": body["method"]}})


class TestHttpConnection:

    @pytest.mark.asyncio
    async def test_request_posts_envelope_with_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return echo_result(request)

        connection = make_connection(handler, headers={"Authorization": "Bearer token"})
        await connection.start()
        result = await connection.request("tools/list", {})

        assert result == {"method": "tools/list"}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == URL
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["Authorization"] == "Bearer token"
        assert json.loads(request.content) == {
            "jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}
        }
        assert connection.connected is True
        assert connection.last_http_status == 200
        assert connection.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_server_error_marks_disconnected(self):
        connection = make_connection(lambda request: httpx.Response(500, text="boom"))
        await connection.start()

        with pytest.raises(ProtocolError, match="HTTP 500") as exc_info:
            await connection.request("initialize", {})

        assert exc_info.value.http_status == 500
        assert connection.connected is False
        assert connection.last_checked_at is not None
        assert connection.snapshot()["last_http_status"] == 500

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        connection = make_connection(lambda request: httpx.Response(200, text="<html>"))
        await connection.start()

        with pytest.raises(ProtocolError, match="not JSON"):
            await connection.request("initialize", {})
        assert "[output] <html>" in connection.logs.tail(5)

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}
            })

        connection = make_connection(handler)
        await connection.start()

        with pytest.raises(ProtocolError, match="Method not found"):
            await connection.request("resources/list", {})
        assert connection.connected is False

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        connection = make_connection(handler)
        await connection.start()

        with pytest.raises(ConnectError, match="Failed to reach"):
            await connection.request("initialize", {})
        assert connection.connected is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        connection = make_connection(handler)
        await connection.start()

        with pytest.raises(RequestTimeoutError):
            await connection.request("initialize", {})
        assert connection.call_history.tail(1)[0].error == "Request timeout"

    @pytest.mark.asyncio
    async def test_stop_cancels_inflight_requests(self):
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return echo_result(request)

        connection = make_connection(handler)
        await connection.start()

        task = asyncio.create_task(connection.request("tools/call", {"name": "slow"}))
        await asyncio.sleep(0.01)
        await connection.stop()

        with pytest.raises(ConnectionClosedError):
            await task
        assert connection.pending_count == 0

        with pytest.raises(ConnectionClosedError):
            await connection.request("tools/list", {})
