"""Shared fixtures for droid-mcp tests."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
for path in (ROOT / "src", ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from droid_mcp.config_store import ConfigStore
from droid_mcp.env_config import Settings

FAKE_SERVER = Path(__file__).parent / "fake_tool_server.py"


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "mcp.json"


@pytest.fixture
def store(config_path):
    return ConfigStore(config_path)


@pytest.fixture
def settings(config_path):
    return Settings(config_path=config_path, request_timeout=5.0, stop_grace_seconds=2.0)


@pytest.fixture
def fake_server_entry():
    """Factory for a stdio entry that runs the fake tool server."""
    def make(mode="normal", **env):
        return {
            "type": "stdio",
            "command": sys.executable,
            "args": [str(FAKE_SERVER)],
            "env": {"FAKE_SERVER_MODE": mode, **env},
        }
    return make
