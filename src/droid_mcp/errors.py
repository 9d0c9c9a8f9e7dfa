"""Exception taxonomy for tool-server connections."""

from typing import Any, Optional

from droid_mcp.response import ErrorCodes


class ToolServerError(Exception):
    """Base class for every failure raised inside droid_mcp."""
    code = ErrorCodes.UNEXPECTED_EXCEPTION


class ConfigError(ToolServerError):
    """Server not found, disabled, or missing a required field."""
    code = ErrorCodes.CONFIG_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class ConnectError(ToolServerError):
    """Spawn failure, port already in use, unreachable endpoint, rejected handshake."""
    code = ErrorCodes.CONNECT_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class ProtocolError(ToolServerError):
    """Malformed JSON-RPC response or an RPC-level error object."""
    code = ErrorCodes.PROTOCOL_ERROR

    def __init__(self, message: str, rpc_code: Optional[int] = None, data: Any = None,
                 http_status: Optional[int] = None):
        super().__init__(message)
        self.rpc_code = rpc_code
        self.data = data
        self.http_status = http_status


class RequestTimeoutError(ToolServerError, TimeoutError):
    """No response arrived within the request timeout."""
    code = ErrorCodes.TIMEOUT

    def __init__(self, message: str = "Request timeout"):
        super().__init__(message)


class ProcessFatalError(ToolServerError):
    """The server process exited or failed while requests were outstanding."""
    code = ErrorCodes.PROCESS_FATAL


class ConnectionClosedError(ToolServerError):
    """The connection was closed by disconnect() before a response arrived."""
    code = ErrorCodes.CONNECTION_CLOSED

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)
