"""Standard result envelope and error codes."""

from typing import Any, Optional


class ResponseEnvelope:
    """Standard result envelope for all registry operations."""

    @staticmethod
    def success(data: Optional[dict] = None, **fields: Any) -> dict:
        """Create a success result."""
        return {
            "success": True,
            "error": None,
            **(data or {}),
            **fields,
        }

    @staticmethod
    def error(code: str, message: str, data: Optional[dict] = None, **fields: Any) -> dict:
        """Create a failure result."""
        return {
            "success": False,
            "error": message,
            "code": code,
            **(data or {}),
            **fields,
        }

    @staticmethod
    def from_exception(exc: Exception, **fields: Any) -> dict:
        """Create a failure result from a ToolServerError (or any exception)."""
        code = getattr(exc, "code", ErrorCodes.UNEXPECTED_EXCEPTION)
        return ResponseEnvelope.error(code, str(exc), **fields)


class ErrorCodes:
    """Error codes shared by the registry, CLI and control API."""
    UNEXPECTED_EXCEPTION = "unexpected_exception"
    CONFIG_ERROR = "config_error"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    CONNECT_ERROR = "connect_error"
    PORT_IN_USE = "port_in_use"
    NOT_CONNECTED = "not_connected"
    PROTOCOL_ERROR = "protocol_error"
    TIMEOUT = "timeout"
    PROCESS_FATAL = "process_fatal"
    CONNECTION_CLOSED = "connection_closed"
    EXTERNAL_SERVICE_ERROR = "external_service_error"
