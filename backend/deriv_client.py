"""
Deriv WebSocket API Client

One aiohttp WebSocket per account. Requests are correlated with responses by
`req_id`: each send() parks a future keyed by a fresh id and the reader task
resolves it when the matching response arrives. Every inbound message is also
fanned out to registered listeners (transaction feed, contract updates, ticks).

Primary (platform) and mirror (second account) connections share this class.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Optional

import aiohttp

from config import DerivAPI, REQUEST_TIMEOUT_SEC
from errors import ConnectivityError, RequestTimeoutError
from health import connection_monitor

logger = logging.getLogger(__name__)

MessageListener = Callable[[dict], Any]


def request_kind(request: dict) -> str:
    """First key of a Deriv request names its call (authorize, proposal, buy...)"""
    return next(iter(request), "unknown")


class DerivConnection:
    """
    Request/response + subscription client for a single Deriv WebSocket.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        name: str = "deriv",
        request_timeout: float = REQUEST_TIMEOUT_SEC,
    ):
        self.url = url or DerivAPI.ws_url()
        self.name = name
        self.request_timeout = request_timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None

        # req_id -> future awaiting the response
        self._pending: dict[int, asyncio.Future] = {}
        self._req_ids = itertools.count(1)

        self._listeners: list[MessageListener] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._close_notified = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self):
        """Connect the WebSocket and start the reader task"""
        if self.is_open:
            return

        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30)
        except (aiohttp.ClientError, OSError) as e:
            await self._session.close()
            self._session = None
            connection_monitor.mark_error(self.name)
            raise ConnectivityError(f"Could not connect to {self.url}: {e}") from e

        self._close_notified = False
        connection_monitor.mark_connected(self.name)
        logger.info(f"[DerivWS] {self.name} connected")
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, request: dict, timeout: Optional[float] = None) -> dict:
        """
        Send a request and wait for the response carrying the same req_id.

        Returns the full response, which may hold an "error" payload; callers
        decide which error class that maps to.

        Raises:
            ConnectivityError: transport not open, or closed while waiting
            RequestTimeoutError: no response within the timeout
        """
        if not self.is_open:
            raise ConnectivityError(f"{self.name} WebSocket not connected")

        req_id = next(self._req_ids)
        payload = {**request, "req_id": req_id}
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        wait = timeout if timeout is not None else self.request_timeout

        try:
            await self._ws.send_str(json.dumps(payload))
            return await asyncio.wait_for(future, wait)
        except asyncio.TimeoutError:
            connection_monitor.mark_error(self.name)
            raise RequestTimeoutError(
                f"No response to {request_kind(request)} (req_id {req_id}) within {wait:.0f}s"
            ) from None
        finally:
            self._pending.pop(req_id, None)

    def on_message(self, listener: MessageListener) -> Callable[[], None]:
        """Register a listener for every inbound message. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_close_callback(self, callback: Callable[[], None]):
        self._close_callbacks.append(callback)

    async def close(self):
        """Close the WebSocket; pending requests fail with ConnectivityError"""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        self._handle_closed()

    async def _read_loop(self):
        """Dispatch inbound frames until the socket closes"""
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    connection_monitor.mark_error(self.name)
                    logger.error(f"[DerivWS] {self.name} error: {self._ws.exception()}")
                    break
        finally:
            self._handle_closed()

    def _dispatch(self, raw: str):
        """Resolve the matching pending request, then notify listeners"""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[DerivWS] {self.name} invalid JSON: {raw[:100]}")
            return

        if not isinstance(data, dict):
            return

        connection_monitor.mark_message(self.name)

        future = self._pending.get(data.get("req_id"))
        if future is not None and not future.done():
            future.set_result(data)

        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception as e:
                logger.error(
                    f"[DerivWS] {self.name} listener failed on {data.get('msg_type')}: "
                    f"{type(e).__name__}: {e}"
                )

    def _handle_closed(self):
        """Fail pending requests and run close callbacks, once per connection"""
        if self._close_notified:
            return
        self._close_notified = True

        for req_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(
                    ConnectivityError(f"{self.name} connection closed before response to req_id {req_id}")
                )
        self._pending.clear()

        connection_monitor.mark_disconnected(self.name)
        logger.info(f"[DerivWS] {self.name} connection closed")

        for callback in list(self._close_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"[DerivWS] {self.name} close callback failed: {e}")
