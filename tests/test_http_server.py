#!/usr/bin/env python3
"""
Tests for the HTTP control API.

Uses Starlette's TestClient; remote tool servers are served by
httpx.MockTransport so no process or socket is involved.
"""

import json

import httpx
import pytest
from starlette.testclient import TestClient

from droid_mcp.registry import ConnectionRegistry
from http_server import create_app

HTTP_URL = "http://tools.example.com/mcp"


def remote_handler(request):
    body = json.loads(request.content)
    results = {
        "initialize": {"serverInfo": {"name": "remote", "version": "2.0.0"}},
        "tools/list": {"tools": [{"name": "search", "inputSchema": {"type": "object"}}]},
        "tools/call": {"content": [{"type": "text", "text": "found"}]},
    }
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]]})


@pytest.fixture
def client(store, settings):
    registry = ConnectionRegistry(store, settings, http_transport=httpx.MockTransport(remote_handler))
    with TestClient(create_app(registry)) as test_client:
        yield test_client


class TestControlAPI:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "UP"

    def test_add_list_remove(self, client):
        response = client.post("/servers", json={
            "name": "remote", "config": {"type": "http", "url": HTTP_URL}
        })
        assert response.status_code == 201

        servers = client.get("/servers").json()["servers"]
        assert [server["name"] for server in servers] == ["remote"]

        duplicate = client.post("/servers", json={
            "name": "remote", "config": {"type": "http", "url": HTTP_URL}
        })
        assert duplicate.status_code == 409

        assert client.delete("/servers/remote").status_code == 200
        assert client.get("/servers").json()["servers"] == []

    def test_invalid_config_is_400(self, client):
        response = client.post("/servers", json={"name": "broken", "config": {"type": "stdio"}})
        assert response.status_code == 400
        assert response.json()["code"] == "config_error"

    def test_unknown_server_is_404(self, client):
        assert client.post("/servers/missing/connect").status_code == 404
        assert client.get("/servers/missing/status").status_code == 404

    def test_update_and_toggle(self, client, store):
        client.post("/servers", json={"name": "remote", "config": {"type": "http", "url": HTTP_URL}})

        response = client.patch("/servers/remote", json={"headers": {"X-Team": "tools"}})
        assert response.status_code == 200
        assert store.get("remote").headers == {"X-Team": "tools"}

        assert client.post("/servers/remote/disable").json()["disabled"] is True
        refused = client.post("/servers/remote/connect")
        assert refused.status_code == 400
        assert client.post("/servers/remote/enable").json()["disabled"] is False

    def test_connect_call_disconnect(self, client):
        client.post("/servers", json={"name": "remote", "config": {"type": "http", "url": HTTP_URL}})

        connected = client.post("/servers/remote/connect")
        assert connected.status_code == 200
        assert connected.json()["tools"][0]["name"] == "search"

        call = client.post("/servers/remote/tools/search", json={"q": "mcp"})
        assert call.status_code == 200
        assert call.json()["result"]["content"][0]["text"] == "found"

        status = client.get("/servers/remote/status").json()["status"]
        assert status["connected"] is True

        assert client.post("/servers/remote/disconnect").json()["disconnected"] is True
        assert client.post("/servers/remote/disconnect").json()["disconnected"] is False

    def test_call_without_connection(self, client):
        client.post("/servers", json={"name": "remote", "config": {"type": "http", "url": HTTP_URL}})
        response = client.post("/servers/remote/tools/search", json={})
        assert response.status_code == 409
        assert response.json()["code"] == "not_connected"

    def test_invalid_json_body(self, client):
        response = client.post("/servers", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_connect_all(self, client):
        client.post("/servers", json={"name": "remote", "config": {"type": "http", "url": HTTP_URL}})
        response = client.post("/connect-all")
        assert response.status_code == 200
        assert response.json()["connected"] == ["remote"]
