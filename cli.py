#!/usr/bin/env python3
"""
CLI for droid-mcp

Manage the MCP server configuration and drive tool-server connections
from the terminal. Useful for checking a server before wiring it into
the desktop UI, and for scripting.

Usage:
  python cli.py list                                        # All configured servers
  python cli.py add echo --command npx --args -y @scope/echo@1.2.0
  python cli.py add remote --type http --url http://localhost:8080/mcp --header "Authorization=Bearer x"
  python cli.py remove echo                                 # Remove a server
  python cli.py enable echo / disable echo                  # Toggle a server
  python cli.py status echo                                 # Status in this process (always idle; see probe)
  python cli.py probe echo                                  # Connect, print status, disconnect
  python cli.py call echo echo --args '{"text": "hi"}'      # Connect and call one tool
  python cli.py connect-all                                 # Start every enabled server once
  python cli.py check-update echo                           # npm update check
  python cli.py serve --port 5860                           # Run the HTTP control API
  python cli.py --format json list                          # JSON output
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add src directory to path
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from droid_mcp.env_config import Settings
from droid_mcp.monitoring import init_monitoring
from droid_mcp.registry import ConnectionRegistry

# Configure logging
logging.basicConfig(
    level=logging.WARNING,  # Only show warnings/errors in CLI mode
    format='%(levelname)s: %(message)s'
)
logger = logging.getLogger("droid-mcp-cli")


def parse_pairs(pairs: Optional[List[str]], option: str) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options into a dict."""
    result = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"{option} expects KEY=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        result[key.strip()] = value
    return result


def build_entry(args) -> Dict[str, Any]:
    """Build a raw config entry from `add` arguments."""
    if args.type == "http":
        entry: Dict[str, Any] = {"type": "http", "url": args.url}
        headers = parse_pairs(args.header, "--header")
        if headers:
            entry["headers"] = headers
    else:
        entry = {"type": "stdio", "command": args.server_command, "args": list(args.args or [])}
        env = parse_pairs(args.env, "--env")
        if env:
            entry["env"] = env
    if args.disabled:
        entry["disabled"] = True
    return entry


class DroidCLI:
    """Runs one CLI command against a connection registry."""

    def __init__(self, args, registry: ConnectionRegistry):
        self.args = args
        self.registry = registry

    async def run(self) -> int:
        command = self.args.command
        start_time = time.time()

        if command == "list":
            result = self.registry.list()
        elif command == "add":
            try:
                entry = build_entry(self.args)
            except ValueError as e:
                print(f"✗ {e}")
                return 1
            result = self.registry.add_server(self.args.name, entry)
        elif command == "remove":
            result = await self.registry.remove_server(self.args.name)
        elif command == "enable":
            result = self.registry.enable_server(self.args.name)
        elif command == "disable":
            result = self.registry.disable_server(self.args.name)
        elif command == "status":
            result = self.registry.get_status(self.args.name)
        elif command == "probe":
            result = await self.probe(self.args.name)
        elif command == "call":
            try:
                tool_args = json.loads(self.args.args) if self.args.args else {}
            except json.JSONDecodeError as e:
                print(f"✗ Invalid JSON in --args: {e}")
                return 1
            result = await self.call(self.args.name, self.args.tool, tool_args)
        elif command == "connect-all":
            result = await self.registry.connect_all()
        elif command == "check-update":
            result = await self.registry.check_update(self.args.name)
        else:
            print(f"✗ Unknown command: {command}")
            return 1

        logger.info(f"{command} finished in {int((time.time() - start_time) * 1000)}ms")
        self.output(result)
        return 0 if result.get("success") else 1

    async def probe(self, name: str) -> dict:
        """Connect, capture the status snapshot, then disconnect."""
        result = await self.registry.connect(name)
        if not result["success"]:
            return result
        status = self.registry.get_status(name)
        await self.registry.disconnect(name)
        return {**status, "server_info": result["server_info"], "tools": result["tools"]}

    async def call(self, name: str, tool: str, tool_args: Any) -> dict:
        connected = await self.registry.connect(name)
        if not connected["success"]:
            return connected
        try:
            return await self.registry.call_tool(name, tool, tool_args)
        finally:
            await self.registry.disconnect(name)

    def output(self, result: dict):
        """Output a result envelope in the requested format."""
        if self.args.format == "json":
            print(json.dumps(result, indent=2, default=str))
            return

        if not result.get("success"):
            print(f"✗ {result.get('error')} ({result.get('code')})")
            for failure in result.get("failures", []):
                print(f"    ✗ {failure['name']}: {failure['error']}")
            for line in result.get("logs", [])[-10:]:
                print(f"    {line}")
            return

        command = self.args.command
        if command == "list":
            self.print_servers(result)
        elif command in ("status", "probe"):
            self.print_status(result)
        elif command == "call":
            print(json.dumps(result.get("result"), indent=2, default=str))
        elif command == "connect-all":
            print(f"✓ Connected: {result['connected_count']}  Skipped: {len(result['skipped'])}")
        elif command == "check-update":
            marker = "⚠ update available" if result["update_available"] else "✓ up to date"
            print(f"{result['package_name']}: {result['current_version']} -> {result['latest_version']} ({marker})")
        else:
            print(f"✓ {command} {self.args.name}")

    def print_servers(self, result: dict):
        print(f"Configuration: {result['config_path']}")
        print("-" * 80)
        servers = result.get("servers", [])
        if not servers:
            print("  No servers configured")
        for server in servers:
            if not server["valid"]:
                # Fields of an invalid entry can have any JSON type
                print(f"  ✗ {server['name']}: {server['validation_error']}")
                continue
            symbol = "●" if server["connected"] else "○"
            if server["type"] == "http":
                target = server["url"]
            else:
                target = " ".join([server["command"]] + server["args"])
            flags = " (disabled)" if server["disabled"] else ""
            print(f"  {symbol} {server['name']} [{server['type']}]{flags}: {target}")

    def print_status(self, result: dict):
        status = result.get("status")
        if status is None:
            # Each CLI run starts with an empty registry
            print(f"○ {self.args.name}: not connected in this process (use probe for a live check)")
            return
        print(f"Server: {status['name']} [{status['type']}]")
        print(f"  Connected: {status['connected']}")
        if status.get("pid") is not None:
            print(f"  PID: {status['pid']}")
        if status.get("last_checked_at") is not None:
            print(f"  Last checked: {status['last_checked_at']}")
        server_info = result.get("server_info") or status.get("server_info")
        if server_info:
            print(f"  Server info: {server_info.get('name')} {server_info.get('version', '')}".rstrip())
        tools = result.get("tools") or status.get("tools") or []
        print(f"  Tools ({len(tools)}):")
        for tool in tools:
            description = f" - {tool['description']}" if tool.get("description") else ""
            print(f"    • {tool['name']}{description}")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage and drive MCP tool-server connections",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
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
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output (show info logs)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List configured servers with live state")

    add = subparsers.add_parser("add", help="Add a server to the configuration")
    add.add_argument("name")
    add.add_argument("--type", choices=["stdio", "http"], default="stdio")
    add.add_argument("--command", dest="server_command", help="Executable for stdio servers")
    add.add_argument("--args", nargs=argparse.REMAINDER, help="Arguments for stdio servers (must come last)")
    add.add_argument("--env", action="append", metavar="KEY=VALUE", help="Environment override (repeatable)")
    add.add_argument("--url", help="Endpoint for http servers")
    add.add_argument("--header", action="append", metavar="KEY=VALUE", help="HTTP header (repeatable)")
    add.add_argument("--disabled", action="store_true", help="Add the server disabled")

    for name, help_text in (
        ("remove", "Remove a server (disconnects first)"),
        ("enable", "Enable a server"),
        ("disable", "Disable a server"),
        ("status", "Show connection status held by this process (see probe for a live check)"),
        ("probe", "Connect, show status and tools, then disconnect"),
        ("check-update", "Check npm for a newer version of an npx server"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("name")

    call = subparsers.add_parser("call", help="Connect and call one tool")
    call.add_argument("name")
    call.add_argument("tool")
    call.add_argument("--args", metavar="JSON", help="JSON arguments for the tool (e.g., '{\"text\": \"hi\"}')")

    subparsers.add_parser("connect-all", help="Start every enabled server")

    serve = subparsers.add_parser("serve", help="Run the HTTP control API")
    serve.add_argument("--host", default=settings.api_host)
    serve.add_argument("--port", "-p", type=int, default=settings.api_port)

    return parser


def parse_args(argv: Optional[List[str]] = None):
    """Parse the command line into (args, settings)."""
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)

    # Adjust logging level if verbose
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    if args.config:
        settings.config_path = Path(args.config).expanduser()
    if args.timeout is not None:
        settings.request_timeout = args.timeout
    return args, settings


async def run_command(args, settings: Settings) -> int:
    async with ConnectionRegistry(settings=settings) as registry:
        return await DroidCLI(args, registry).run()


async def main_async(argv: Optional[List[str]] = None) -> int:
    """Async main function."""
    args, settings = parse_args(argv)
    return await run_command(args, settings)


def serve(args, settings: Settings):
    """Hand over to the HTTP control API entry point."""
    import http_server

    sys.argv = [
        "http_server.py",
        "--host", args.host,
        "--port", str(args.port),
        "--config", str(settings.config_path),
        "--timeout", str(settings.request_timeout),
    ]
    http_server.main()


def main():
    """Main entry point."""
    args, settings = parse_args()
    if args.command == "serve":
        # uvicorn owns the event loop here
        serve(args, settings)
        return

    init_monitoring()

    try:
        exit_code = asyncio.run(run_command(args, settings))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
