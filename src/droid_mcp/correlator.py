"""
JSON-RPC request/response correlation for one connection.

Every request gets the next ID from a strictly increasing counter, a
CallRecord in the connection's call history, and an entry in the pending
table with a timer armed. Whichever of (matching response, timer,
connection close) reaches the pending entry first takes it out of the
table and settles it; the others find the slot empty and do nothing.

Usage:
    correlator = RequestCorrelator(call_history, timeout=30)

    result = await correlator.request("tools/list", {}, write)
    ...
    correlator.resolve(message)        # from the transport's receive path
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from droid_mcp.errors import ProtocolError, RequestTimeoutError
from droid_mcp.models import CallRecord, PendingRequest
from droid_mcp.ring import RingBuffer

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
DEFAULT_TIMEOUT = 30.0

Writer = Callable[[Dict[str, Any]], Awaitable[None]]


def build_request(request_id: int, method: str, params: Any = None) -> Dict[str, Any]:
    """Build a JSON-RPC 2.0 request envelope."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": params if params is not None else {},
    }


def is_response(message: Any) -> bool:
    """True for a JSON-RPC response (has an id, no method)."""
    return isinstance(message, dict) and "id" in message and "method" not in message


class RequestCorrelator:
    """Allocates request IDs and matches responses to pending requests."""

    def __init__(self, call_history: RingBuffer, timeout: float = DEFAULT_TIMEOUT):
        self.call_history = call_history
        self.timeout = timeout
        self._last_id = 0
        self.pending: Dict[int, PendingRequest] = {}

    @property
    def last_id(self) -> int:
        return self._last_id

    def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    async def request(self, method: str, params: Any, write: Writer) -> Any:
        """
        Send one request and wait for its outcome.

        Args:
            method: JSON-RPC method name
            params: Method params (defaults to an empty object on the wire)
            write: Coroutine function that puts the envelope on the transport

        Returns:
            The ``result`` member of the matching response

        Raises:
            RequestTimeoutError: No response within ``timeout`` seconds
            ProtocolError: The response carried an error or was malformed
            ToolServerError: Whatever the transport rejected the request with
        """
        loop = asyncio.get_running_loop()
        request_id = self.next_id()
        record = CallRecord(id=request_id, method=method, params=params)
        self.call_history.append(record)

        pending = PendingRequest(
            id=request_id,
            method=method,
            params=params,
            record=record,
            future=loop.create_future(),
            start_time=record.start_time,
        )
        self.pending[request_id] = pending
        pending.timer = loop.call_later(self.timeout, self._expire, request_id)

        try:
            await write(build_request(request_id, method, params))
        except Exception as e:
            self.fail(request_id, e)

        try:
            return await pending.future
        except asyncio.CancelledError:
            # Caller gave up; the slot must still be cleared exactly once
            self.fail(request_id, asyncio.CancelledError())
            raise

    def _take(self, request_id: Any) -> Optional[PendingRequest]:
        pending = self.pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: int):
        pending = self._take(request_id)
        if pending is None:
            return
        logger.debug(f"Request {request_id} ({pending.method}) timed out after {self.timeout}s")
        self._settle_error(pending, RequestTimeoutError("Request timeout"))

    def resolve(self, message: Dict[str, Any]) -> bool:
        """
        Deliver an incoming response message.

        Returns:
            True if it settled a pending request, False if the id was
            unknown (already timed out, or spurious)
        """
        if not is_response(message):
            return False
        return self.settle(message["id"], message)

    def settle(self, request_id: Any, message: Dict[str, Any]) -> bool:
        """Settle ``request_id`` with the given response message."""
        try:
            pending = self._take(request_id)
        except TypeError:
            # Unhashable id (e.g. an object); cannot match anything we sent
            return False
        if pending is None:
            return False

        if message.get("error") is not None:
            error = message["error"]
            if isinstance(error, dict):
                exc = ProtocolError(
                    str(error.get("message") or "Unknown error"),
                    rpc_code=error.get("code"),
                    data=error.get("data"),
                )
            else:
                exc = ProtocolError(str(error))
            self._settle_error(pending, exc)
        elif "result" in message:
            pending.record.finish(result=message["result"])
            if not pending.future.done():
                pending.future.set_result(message["result"])
        else:
            self._settle_error(pending, ProtocolError("Malformed response: neither result nor error"))
        return True

    def fail(self, request_id: int, exc: BaseException) -> bool:
        """Settle ``request_id`` with an error, if it is still pending."""
        pending = self._take(request_id)
        if pending is None:
            return False
        self._settle_error(pending, exc)
        return True

    def reject_all(self, exc: BaseException) -> int:
        """Settle every pending request with ``exc``. Returns how many were settled."""
        ids = list(self.pending)
        count = 0
        for request_id in ids:
            if self.fail(request_id, exc):
                count += 1
        return count

    def _settle_error(self, pending: PendingRequest, exc: BaseException):
        message = str(exc) or type(exc).__name__
        if isinstance(exc, asyncio.CancelledError):
            message = "Request cancelled"
        pending.record.finish(error=message)
        if not pending.future.done():
            if isinstance(exc, asyncio.CancelledError):
                pending.future.cancel()
            else:
                pending.future.set_exception(exc)
