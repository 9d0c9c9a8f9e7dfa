#!/usr/bin/env python3
"""
Local HTTP control API for droid-mcp

Exposes the connection registry to the desktop UI (or any local client)
over HTTP. One registry lives for the lifetime of the app; shutting the
app down disconnects every server.

Endpoints:
  GET    /health                         - Basic health check
  GET    /servers                        - All configured servers with live state
  POST   /servers                        - Add a server   {"name": ..., "config": {...}}
  PATCH  /servers/{name}                 - Update a server (shallow merge)
  DELETE /servers/{name}                 - Remove a server (disconnects first)
  POST   /servers/{name}/enable          - Enable a server
  POST   /servers/{name}/disable         - Disable a server
  POST   /servers/{name}/connect         - Start + handshake
  POST   /servers/{name}/disconnect      - Stop (idempotent)
  GET    /servers/{name}/status          - Connection snapshot
  GET    /servers/{name}/update          - npm update check
  POST   /servers/{name}/tools/{tool}    - Call a tool (JSON body = arguments)
  POST   /connect-all                    - Start every enabled server

Usage:
  python http_server.py                          # Default 127.0.0.1:5860
  python http_server.py --port 5860              # Custom port
  DROID_MCP_API_PORT=5860 python http_server.py  # Via environment
"""

import argparse
import contextlib
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

# Add src directory to path for imports
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from droid_mcp.env_config import Settings
from droid_mcp.monitoring import init_monitoring
from droid_mcp.registry import ConnectionRegistry
from droid_mcp.response import ErrorCodes, ResponseEnvelope

logger = logging.getLogger("droid-mcp-http")

STATUS_CODES = {
    ErrorCodes.CONFIG_ERROR: 400,
    ErrorCodes.ALREADY_EXISTS: 409,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.NOT_CONNECTED: 409,
    ErrorCodes.PORT_IN_USE: 409,
    ErrorCodes.CONNECT_ERROR: 502,
    ErrorCodes.PROTOCOL_ERROR: 502,
    ErrorCodes.PROCESS_FATAL: 502,
    ErrorCodes.CONNECTION_CLOSED: 502,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCodes.TIMEOUT: 504,
}


def envelope_response(result: dict) -> JSONResponse:
    """Map a registry envelope onto an HTTP response."""
    if result.get("success"):
        return JSONResponse(result)
    status_code = STATUS_CODES.get(result.get("code"), 500)
    return JSONResponse(result, status_code=status_code)


async def read_json(request, default=None):
    body = await request.body()
    if not body:
        return default
    return json.loads(body)


def create_app(registry: ConnectionRegistry) -> Starlette:
    """Create the Starlette app around a connection registry."""

    @contextlib.asynccontextmanager
    async def lifespan(app):
        logger.info(f"Using MCP configuration {registry.store.path}")
        yield
        logger.info("Shutting down: disconnecting all servers")
        await registry.shutdown()

    async def health(request):
        """Basic health check - always returns UP."""
        return JSONResponse({
            "status": "UP",
            "server": "droid-mcp",
            "connected_servers": registry.connected_names,
            "timestamp": datetime.now().isoformat()
        })

    async def list_servers(request):
        return envelope_response(registry.list())

    async def add_server(request):
        try:
            body = await read_json(request, {})
        except json.JSONDecodeError as e:
            return envelope_response(ResponseEnvelope.error(ErrorCodes.CONFIG_ERROR, f"Invalid JSON body: {e}"))
        if not isinstance(body, dict) or "name" not in body or "config" not in body:
            return envelope_response(ResponseEnvelope.error(
                ErrorCodes.CONFIG_ERROR, 'Body must be {"name": ..., "config": {...}}'
            ))
        result = registry.add_server(body["name"], body["config"])
        if result["success"]:
            return JSONResponse(result, status_code=201)
        return envelope_response(result)

    async def update_server(request):
        try:
            changes = await read_json(request, {})
        except json.JSONDecodeError as e:
            return envelope_response(ResponseEnvelope.error(ErrorCodes.CONFIG_ERROR, f"Invalid JSON body: {e}"))
        return envelope_response(registry.update_server(request.path_params["name"], changes))

    async def remove_server(request):
        return envelope_response(await registry.remove_server(request.path_params["name"]))

    async def enable_server(request):
        return envelope_response(registry.enable_server(request.path_params["name"]))

    async def disable_server(request):
        return envelope_response(registry.disable_server(request.path_params["name"]))

    async def connect(request):
        return envelope_response(await registry.connect(request.path_params["name"]))

    async def disconnect(request):
        return envelope_response(await registry.disconnect(request.path_params["name"]))

    async def status(request):
        return envelope_response(registry.get_status(request.path_params["name"]))

    async def check_update(request):
        return envelope_response(await registry.check_update(request.path_params["name"]))

    async def call_tool(request):
        """Call a tool; the JSON body is passed through as the tool arguments."""
        try:
            arguments = await read_json(request, {})
        except json.JSONDecodeError as e:
            return envelope_response(ResponseEnvelope.error(ErrorCodes.CONFIG_ERROR, f"Invalid JSON body: {e}"))
        result = await registry.call_tool(
            request.path_params["name"],
            request.path_params["tool"],
            arguments,
        )
        return envelope_response(result)

    async def connect_all(request):
        return envelope_response(await registry.connect_all())

    routes = [
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/servers", endpoint=list_servers, methods=["GET"]),
        Route("/servers", endpoint=add_server, methods=["POST"]),
        Route("/servers/{name}", endpoint=update_server, methods=["PATCH"]),
        Route("/servers/{name}", endpoint=remove_server, methods=["DELETE"]),
        Route("/servers/{name}/enable", endpoint=enable_server, methods=["POST"]),
        Route("/servers/{name}/disable", endpoint=disable_server, methods=["POST"]),
        Route("/servers/{name}/connect", endpoint=connect, methods=["POST"]),
        Route("/servers/{name}/disconnect", endpoint=disconnect, methods=["POST"]),
        Route("/servers/{name}/status", endpoint=status, methods=["GET"]),
        Route("/servers/{name}/update", endpoint=check_update, methods=["GET"]),
        Route("/servers/{name}/tools/{tool}", endpoint=call_tool, methods=["POST"]),
        Route("/connect-all", endpoint=connect_all, methods=["POST"]),
    ]

    # Configure CORS middleware; the desktop UI is served from another origin
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )
    ]

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


def parse_args(argv=None):
    """Parse the command line into (args, settings)."""
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(
        description="Local HTTP control API for droid-mcp tool-server connections"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.api_port,
        help=f"HTTP port to listen on (default: {settings.api_port})"
    )
    parser.add_argument(
        "--host",
        default=settings.api_host,
        help=f"Host to bind to (default: {settings.api_host})"
    )
    parser.add_argument(
        "--config",
        help=f"Path to the MCP configuration file (default: {settings.config_path})"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help=f"Request timeout in seconds (default: {settings.request_timeout})"
    )
    args = parser.parse_args(argv)

    if args.config:
        settings.config_path = Path(args.config).expanduser()
    if args.timeout is not None:
        settings.request_timeout = args.timeout
    return args, settings


def main():
    """Run the droid-mcp control API."""
    args, settings = parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    init_monitoring()

    registry = ConnectionRegistry(settings=settings)
    app = create_app(registry)

    logger.info(f"Starting droid-mcp control API on {args.host}:{args.port}")
    logger.info(f"Health check: http://{args.host}:{args.port}/health")
    logger.info(f"Servers: http://{args.host}:{args.port}/servers")

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
