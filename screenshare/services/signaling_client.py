"""Participant side of the signaling websocket, with automatic reconnection."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.errors import TransportUnavailableError
from ..schemas import signaling as schemas

MessageHandler = Callable[[dict], Awaitable[None]]
StatusHandler = Callable[[str, str], None]

logger = logging.getLogger(__name__)


class SignalingClient:
    """Keep a websocket to the relay open and correlate requests with their acks."""

    def __init__(
        self,
        url: str,
        *,
        handler: MessageHandler | None = None,
        on_status: StatusHandler | None = None,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
        reconnect_attempts: int = 10,
        request_timeout: float = 20.0,
    ) -> None:
        self.url = url
        self.handler = handler
        self._on_status = on_status
        self._reconnect_delay = reconnect_delay
        self._reconnect_delay_max = reconnect_delay_max
        self._reconnect_attempts = reconnect_attempts
        self._request_timeout = request_timeout
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._pending: dict[int, asyncio.Future[dict]] = {}
        self._request_ids = itertools.count(1)
        self.connection_id: str | None = None

    async def __aenter__(self) -> "SignalingClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> str:
        await asyncio.wait_for(self._connected.wait(), timeout)
        return self.connection_id or ""

    async def close(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._connected.clear()
        self._fail_pending()

    async def request(self, message_type: str, **payload: Any) -> dict:
        """Send a request and wait for its ack."""

        if not self.connected:
            raise TransportUnavailableError("Not connected to the signaling server")
        request_id = next(self._request_ids)
        future: asyncio.Future[dict] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"type": message_type, "requestId": request_id, **payload}))
            return await asyncio.wait_for(future, self._request_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def emit(self, message_type: str, **payload: Any) -> bool:
        """Fire-and-forget send; returns ``False`` if the relay is unreachable."""

        if not self.connected:
            logger.debug("Not connected; dropping %s", message_type)
            return False
        try:
            await self._ws.send(json.dumps({"type": message_type, **payload}))
        except ConnectionClosed:
            logger.debug("Connection closed; dropping %s", message_type)
            return False
        return True

    async def _run(self) -> None:
        attempts = 0
        delay = self._reconnect_delay
        while True:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    if attempts:
                        logger.info("Reconnected after %d attempts", attempts)
                        self._status("Reconnected to server", "success")
                    attempts = 0
                    delay = self._reconnect_delay
                    await self._receive_loop(ws)
                logger.info("Disconnected from signaling server")
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Signaling connection error: %s", exc)
            finally:
                was_connected = self._connected.is_set()
                self._connected.clear()
                self._ws = None
                self._fail_pending()

            if was_connected:
                self._status("Connection to server lost", "error")
            attempts += 1
            if attempts > self._reconnect_attempts:
                logger.error("Failed to reconnect to server")
                self._status("Could not reconnect to server", "error")
                return
            logger.info("Reconnection attempt %d in %.1fs", attempts, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_delay_max)

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            if isinstance(raw, bytes):
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON frame from relay")
                continue
            if not isinstance(message, dict):
                continue

            message_type = message.get("type")
            if message_type == schemas.CONNECTED:
                self.connection_id = message.get("id")
                self._connected.set()
                logger.info("Connected to signaling server as %s", self.connection_id)
                self._status("Connected to server", "success")
            elif message_type == schemas.ACK:
                future = self._pending.get(message.get("requestId"))
                if future is not None and not future.done():
                    future.set_result(message)
            elif self.handler is not None:
                try:
                    await self.handler(message)
                except Exception:  # noqa: BLE001 - one bad message must not drop the connection
                    logger.exception("Signal handler failed for %s", message_type)

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportUnavailableError("Connection to server lost"))
        self._pending.clear()

    def _status(self, message: str, level: str) -> None:
        if self._on_status:
            self._on_status(message, level)
