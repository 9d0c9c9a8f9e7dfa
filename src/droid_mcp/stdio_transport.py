"""
Stdio transport: a tool server spawned as a local subprocess.

Per the MCP stdio convention the server reads newline-delimited JSON-RPC
requests on stdin and writes one JSON message per line on stdout. Lines
that are not JSON are diagnostic text and only logged. stderr is logged
line by line.

The connection publishes a ProcessExited event when the process goes away;
it never touches registry membership itself.
"""

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from droid_mcp.connection import Connection, EventSink, ProcessExited
from droid_mcp.correlator import is_response
from droid_mcp.errors import ConnectError, ConnectionClosedError, ProcessFatalError
from droid_mcp.models import STDIO, StdioServerConfig

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# tools/list results can be large; asyncio's default 64 KiB line limit is not enough
MAX_LINE_BYTES = 16 * 1024 * 1024

# How long to keep reading buffered output after the process has exited
EXIT_DRAIN_SECONDS = 1.0


def build_env(overrides: Dict[str, str]) -> Dict[str, str]:
    """
    Environment for a spawned server: ours, plus config.env on top.

    GUI-launched managers often start with a minimal PATH, so common binary
    locations (where npx/uvx usually live) are appended when missing.
    """
    env = os.environ.copy()

    if not IS_WINDOWS:
        # Ensure HOME is set (needed by some tools)
        if "HOME" not in env:
            env["HOME"] = str(Path.home())

        path_entries = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        extra_paths = [
            str(Path.home() / ".local" / "bin"),
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
        ]
        for path in extra_paths:
            if path not in path_entries:
                path_entries.append(path)
        env["PATH"] = os.pathsep.join(path_entries)

    env.update(overrides)
    return env


async def spawn_process(command: str, args, env: Dict[str, str]) -> asyncio.subprocess.Process:
    """
    Spawn the server with piped stdio.

    On Windows the command goes through the shell so ``npx``-style .cmd
    shims resolve. Elsewhere it is exec'd directly in a new session, which
    makes it the leader of a process group we can signal as a whole.
    """
    if IS_WINDOWS:
        return await asyncio.create_subprocess_shell(
            subprocess.list2cmdline([command, *args]),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=MAX_LINE_BYTES,
        )

    return await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
        limit=MAX_LINE_BYTES,
        start_new_session=True,
    )


async def terminate_process_tree(process: asyncio.subprocess.Process):
    """Ask the process and everything it spawned to exit."""
    if IS_WINDOWS:
        # Forceful tree kill; shells and wrappers leave children behind otherwise
        killer = await asyncio.create_subprocess_exec(
            "taskkill", "/pid", str(process.pid), "/f", "/t",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        return

    try:
        os.killpg(process.pid, signal.SIGTERM)
    except PermissionError:
        process.terminate()


def kill_process_tree(process: asyncio.subprocess.Process):
    if IS_WINDOWS:
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except PermissionError:
        process.kill()


def describe_returncode(returncode: Optional[int]) -> Tuple[Optional[int], Optional[str]]:
    """Split an asyncio returncode into (exit code, signal name)."""
    if returncode is None:
        return None, None
    if returncode < 0 and not IS_WINDOWS:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


class StdioConnection(Connection):
    """A tool server running as a child process, spoken to over stdin/stdout."""

    transport = STDIO

    def __init__(
        self,
        config: StdioServerConfig,
        on_event: Optional[EventSink] = None,
        stop_grace_seconds: float = 5.0,
        **kwargs,
    ):
        super().__init__(config, **kwargs)
        self.on_event = on_event
        self.stop_grace_seconds = stop_grace_seconds
        self.process: Optional[asyncio.subprocess.Process] = None
        self.pid: Optional[int] = None
        self.start_time: Optional[float] = None
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[str] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self):
        if self.process is not None:
            raise ConnectError(f'Server "{self.name}" was already started')

        config = self.config
        try:
            self.process = await spawn_process(config.command, config.args, build_env(config.env))
        except OSError as e:
            self.log(f"[error] {e}")
            raise ConnectError(f"Failed to start {config.command}: {e}") from e

        self.pid = self.process.pid
        self.start_time = time.time()
        logger.info(f"Started {self.name} (pid {self.pid}): {config.command} {' '.join(config.args)}".rstrip())

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._watch_task = asyncio.create_task(self._watch())

    async def request(self, method: str, params: Any = None) -> Any:
        if not self.running:
            raise ConnectionClosedError(f'Server "{self.name}" is not running')
        return await self.correlator.request(method, params, self._write)

    async def _write(self, envelope: Dict[str, Any]):
        if not self.running:
            raise ConnectionClosedError(f'Server "{self.name}" is not running')

        data = json.dumps(envelope, ensure_ascii=False)
        self.log(f"[send] {data}")
        try:
            self.process.stdin.write(data.encode("utf-8") + b"\n")
            await self.process.stdin.drain()
        except ConnectionError as e:
            self._on_error(e)
            raise ProcessFatalError(f'Failed to write to "{self.name}": {e}') from e

    def handle_line(self, text: str):
        """Frame one stdout line: JSON goes to the correlator, anything else is logged."""
        line = text.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            self.log(f"[output] {line}")
            return

        self.log(f"[recv] {line}")
        if is_response(message):
            self.correlator.resolve(message)

    async def _read_stdout(self):
        stream = self.process.stdout
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                # Line over the stream limit; the reader has already discarded it.
                # A framing problem, not a process failure: the connection stays up.
                self.log(f"[error] Dropped oversized stdout line: {e}")
                continue
            if not raw:
                break
            self.handle_line(raw.decode("utf-8", errors="replace"))

    async def _read_stderr(self):
        stream = self.process.stderr
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self.log(f"[stderr] {line}")

    def _on_error(self, exc: BaseException):
        self.log(f"[error] {exc}")
        self.connected = False

    async def _watch(self):
        returncode = await self.process.wait()

        readers = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if readers:
            _, still_reading = await asyncio.wait(readers, timeout=EXIT_DRAIN_SECONDS)
            for task in still_reading:
                task.cancel()

        code, sig = describe_returncode(returncode)
        self.exit_code, self.exit_signal = code, sig
        self.log(f"[exit] code={code} signal={sig}")
        self.connected = False

        if self._closing:
            self.correlator.reject_all(ConnectionClosedError("Connection closed"))
        else:
            logger.warning(f"Server {self.name} (pid {self.pid}) exited: code={code} signal={sig}")
            self.correlator.reject_all(
                ProcessFatalError(f'Server "{self.name}" exited (code={code}, signal={sig})')
            )

        if self.on_event is not None:
            self.on_event(ProcessExited(name=self.name, connection=self, code=code, signal=sig))

    async def _wait_exit(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self):
        self._closing = True
        self.connected = False
        self.correlator.reject_all(ConnectionClosedError("Connection closed"))

        process = self.process
        if process is None:
            return

        if process.returncode is None:
            try:
                await terminate_process_tree(process)
            except ProcessLookupError:
                pass  # Already gone
            except OSError as e:
                self.log(f"[error] {e}")
                logger.warning(f"Failed to terminate {self.name} (pid {self.pid}): {e}")

            if not await self._wait_exit(self.stop_grace_seconds):
                logger.warning(f"{self.name} (pid {self.pid}) ignored termination, killing")
                try:
                    kill_process_tree(process)
                except ProcessLookupError:
                    pass
                await self._wait_exit(self.stop_grace_seconds)

        if self._watch_task is not None and not self._watch_task.done():
            await asyncio.wait([self._watch_task], timeout=self.stop_grace_seconds)

    def transport_fields(self) -> Dict[str, Any]:
        uptime = None
        if self.start_time is not None and self.running:
            uptime = round(time.time() - self.start_time, 3)
        return {
            "pid": self.pid,
            "start_time": self.start_time,
            "uptime_seconds": uptime,
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
        }
