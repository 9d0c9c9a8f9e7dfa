"""
Pre-flight port check for stdio servers that listen on a fixed local port.

Some servers (browser bridges, for instance) bind a well-known TCP port at
startup and fail in confusing ways when a stale instance still holds it.
Before spawning such a server we try to bind the port ourselves; if that
fails with "address in use" the connect is refused before any process is
created.
"""

import errno
import logging
import socket
import sys
from typing import Dict, Optional

from droid_mcp.models import StdioServerConfig

logger = logging.getLogger(__name__)

PROBE_HOST = "127.0.0.1"

# Explicit overrides, checked in order
PORT_ENV_VARS = ("BROWSERMCP_PORT", "PORT")

# Servers known to listen on a fixed port, matched as a substring of the name
KNOWN_SERVER_PORTS: Dict[str, int] = {
    "browsermcp": 9009,
}

_ADDR_IN_USE = {errno.EADDRINUSE}
if hasattr(errno, "WSAEADDRINUSE"):
    _ADDR_IN_USE.add(errno.WSAEADDRINUSE)


def required_port(name: str, config: StdioServerConfig) -> Optional[int]:
    """
    Work out which port a server needs free before it is started.

    Args:
        name: Server name
        config: Server configuration

    Returns:
        Port number, or None if no guard is needed
    """
    env = config.env or {}
    for var in PORT_ENV_VARS:
        value = env.get(var)
        if value:
            try:
                return int(str(value).strip())
            except ValueError:
                logger.warning(f"Ignoring non-numeric {var}={value!r} for {name}")
                return None

    lowered = name.lower()
    for pattern, port in KNOWN_SERVER_PORTS.items():
        if pattern in lowered:
            return port

    return None


def check_available(port: int, host: str = PROBE_HOST) -> bool:
    """
    Check whether a TCP port can be bound on the loopback interface.

    This is a bind attempt, not a connect attempt: a port nobody listens on
    is available. Only "address in use" counts as unavailable; any other
    bind failure is logged and treated as available.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            # Do not mistake TIME_WAIT leftovers for a live listener
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError as e:
        if e.errno in _ADDR_IN_USE:
            return False
        logger.debug(f"Port probe on {host}:{port} failed with {e}; treating as available")
        return True
    finally:
        sock.close()
