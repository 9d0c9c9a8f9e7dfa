"""
HTTP transport: a remote tool server reached with one POST per RPC call.

There is no persistent socket and no framing; each request body is a
JSON-RPC envelope and each response body is the matching JSON-RPC
response. ``connected`` and ``last_checked_at`` always reflect the most
recent attempt.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Set

import httpx

from droid_mcp.connection import Connection
from droid_mcp.errors import ConnectError, ConnectionClosedError, ProtocolError, RequestTimeoutError
from droid_mcp.models import HTTP, HttpServerConfig

logger = logging.getLogger(__name__)


class HttpConnection(Connection):
    """A remote tool server spoken to over HTTP POST."""

    transport = HTTP

    def __init__(
        self,
        config: HttpServerConfig,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(config, **kwargs)
        self.http_transport = http_transport
        self.last_checked_at: Optional[float] = None
        self.last_http_status: Optional[int] = None
        self._inflight: Set[asyncio.Task] = set()
        self._closed = False

    async def start(self):
        # Nothing to open; every request is its own POST
        self._closed = False

    async def request(self, method: str, params: Any = None) -> Any:
        if self._closed:
            raise ConnectionClosedError(f'Server "{self.name}" is disconnected')
        return await self.correlator.request(method, params, self._post)

    async def _post(self, envelope: Dict[str, Any]):
        task = asyncio.create_task(self._exchange(envelope))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        headers.update(self.config.headers)
        return headers

    async def _exchange(self, envelope: Dict[str, Any]):
        request_id = envelope["id"]
        succeeded = False
        try:
            async with httpx.AsyncClient(transport=self.http_transport, timeout=self.correlator.timeout) as client:
                response = await client.post(self.config.url, json=envelope, headers=self._headers())

            self.last_http_status = response.status_code
            if response.status_code < 200 or response.status_code >= 300:
                self.log(f"[error] HTTP {response.status_code} for {envelope['method']}")
                self.correlator.fail(
                    request_id,
                    ProtocolError(f"HTTP {response.status_code}", http_status=response.status_code),
                )
                return

            try:
                message = response.json()
            except (json.JSONDecodeError, ValueError):
                self.log(f"[output] {response.text[:500]}")
                self.correlator.fail(request_id, ProtocolError("Response body is not JSON"))
                return

            self.log(f"[recv] {json.dumps(message, ensure_ascii=False)}")
            if not isinstance(message, dict):
                self.correlator.fail(request_id, ProtocolError("Response is not a JSON-RPC object"))
                return

            # One POST, one response: settle by the id we sent
            succeeded = message.get("error") is None and "result" in message
            self.correlator.settle(request_id, message)

        except httpx.TimeoutException:
            self.log(f"[error] timeout calling {self.config.url}")
            self.correlator.fail(request_id, RequestTimeoutError("Request timeout"))
        except httpx.HTTPError as e:
            self.log(f"[error] {e}")
            self.correlator.fail(request_id, ConnectError(f"Failed to reach {self.config.url}: {e}"))
        except asyncio.CancelledError:
            self.correlator.fail(request_id, ConnectionClosedError("Connection closed"))
            raise
        except Exception as e:
            logger.error(f"Unexpected error calling {self.name}: {e}", exc_info=True)
            self.correlator.fail(request_id, e)
        finally:
            self.last_checked_at = time.time()
            self.connected = succeeded and not self._closed

    async def stop(self):
        self._closed = True
        self.connected = False
        self.correlator.reject_all(ConnectionClosedError("Connection closed"))
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def transport_fields(self) -> Dict[str, Any]:
        return {
            "url": self.config.url,
            "last_checked_at": self.last_checked_at,
            "last_http_status": self.last_http_status,
        }
